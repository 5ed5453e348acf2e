"""
Placeholder rendering for step templates.

Templates use {{placeholder}} markers. Known customer/business values are
filled in, scalar values from the execution's trigger data are available
under their own key, and unknown placeholders render as an empty string.
"""

import logging
import re
from typing import Any, Dict, Optional

from src.models import Business, Customer, Execution

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r'\{\{\s*([a-zA-Z0-9_]+)\s*\}\}')


def build_context(customer: Customer, execution: Optional[Execution] = None,
                  business: Optional[Business] = None) -> Dict[str, Any]:
    context = {}

    if execution is not None and execution.trigger_data:
        for key, value in execution.trigger_data.items():
            if isinstance(value, (str, int, float)) and not isinstance(value, bool):
                context[key] = value

    context.update({
        'customer_name': customer.name or 'there',
        'first_name': customer.first_name or 'there',
        'customer_email': customer.email or '',
        'customer_phone': customer.phone or '',
        'service_type': customer.service_type or context.get('service_type', ''),
    })

    if business is None and customer.business_id:
        business = customer.business
    if business is not None:
        context['business_name'] = business.name
    else:
        context.setdefault('business_name', 'our team')

    return context


def render_template(template: Optional[str], context: Dict[str, Any]) -> str:
    if not template:
        return ""

    def replace(match):
        key = match.group(1)
        if key not in context:
            logger.debug(f"No value for placeholder {{{{{key}}}}}")
            return ''
        return str(context[key])

    return PLACEHOLDER_PATTERN.sub(replace, template)
