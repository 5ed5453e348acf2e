"""
MessageSender capability and channel adapters.

The dispatcher only knows the MessageSender interface:

    send(channel, recipient, subject, body) -> SendResult

ChannelRouter fans out to one sender per channel. The adapters here wrap
Resend for email and a generic HTTP SMS gateway; any failure surfaces as
DeliveryError so the dispatcher can apply its retry policy.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

import requests
import resend

from src.models import Channel
from src.services.automation.errors import DeliveryError

logger = logging.getLogger(__name__)

SENT = 'SENT'
DELIVERED = 'DELIVERED'


@dataclass
class SendResult:
    message_id: Optional[str] = None
    status: str = SENT  # SENT, or DELIVERED for synchronously confirmed channels

    @property
    def delivered(self) -> bool:
        return self.status == DELIVERED


class MessageSender:
    """Interface implemented by every channel adapter."""

    def send(self, channel: str, recipient: str, subject: Optional[str], body: str) -> SendResult:
        raise NotImplementedError


class ChannelRouter(MessageSender):
    """Routes each message to the sender registered for its channel."""

    def __init__(self, senders: Optional[Dict[str, MessageSender]] = None):
        self.senders: Dict[str, MessageSender] = {}
        for channel, sender in (senders or {}).items():
            self.register(channel, sender)

    def register(self, channel, sender: MessageSender):
        key = channel.value if isinstance(channel, Channel) else str(channel)
        self.senders[key] = sender

    def send(self, channel, recipient, subject, body) -> SendResult:
        key = channel.value if isinstance(channel, Channel) else str(channel)
        sender = self.senders.get(key)
        if sender is None:
            raise DeliveryError(f"No sender configured for channel {key}", channel=key, retryable=False)
        return sender.send(key, recipient, subject, body)


class ResendEmailSender(MessageSender):
    """Email channel backed by the Resend API."""

    def __init__(self, api_key: Optional[str], from_email: str):
        self.api_key = api_key
        self.from_email = from_email

        if self.api_key:
            resend.api_key = self.api_key
            logger.info("Resend API key configured")
        else:
            logger.warning("No Resend API key found - email steps will fail")

    def send(self, channel, recipient, subject, body) -> SendResult:
        if not self.api_key:
            raise DeliveryError("Email sender is not configured", channel=Channel.EMAIL.value, retryable=False)

        try:
            response = resend.Emails.send({
                "from": self.from_email,
                "to": recipient,
                "subject": subject or "",
                "html": body
            })
        except Exception as e:
            logger.error(f"Failed to send email to {recipient}: {str(e)}")
            raise DeliveryError(f"Email send failed: {str(e)}", channel=Channel.EMAIL.value) from e

        message_id = response.get('id') if isinstance(response, dict) else getattr(response, 'id', None)
        logger.info(f"Email sent to {recipient}: {message_id}")
        return SendResult(message_id=message_id, status=SENT)


class HttpSmsSender(MessageSender):
    """SMS channel backed by an HTTP gateway that accepts {to, from, body} JSON."""

    def __init__(self, gateway_url: Optional[str], api_token: Optional[str] = None,
                 from_number: Optional[str] = None, timeout: int = 15):
        self.gateway_url = gateway_url
        self.api_token = api_token
        self.from_number = from_number
        self.timeout = timeout

        if not self.gateway_url:
            logger.warning("No SMS gateway URL configured - SMS steps will fail")

    def _headers(self):
        headers = {'Content-Type': 'application/json'}
        if self.api_token:
            headers['Authorization'] = f'Bearer {self.api_token}'
        return headers

    def send(self, channel, recipient, subject, body) -> SendResult:
        if not self.gateway_url:
            raise DeliveryError("SMS sender is not configured", channel=Channel.SMS.value, retryable=False)

        payload = {'to': recipient, 'body': body}
        if self.from_number:
            payload['from'] = self.from_number

        try:
            response = requests.post(self.gateway_url, json=payload, headers=self._headers(), timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.error(f"SMS gateway request failed for {recipient}: {str(e)}")
            raise DeliveryError(f"SMS gateway unreachable: {str(e)}", channel=Channel.SMS.value) from e

        if response.status_code >= 400:
            # Client errors other than throttling will not succeed on retry
            retryable = response.status_code >= 500 or response.status_code == 429
            try:
                response_data = response.json()
            except ValueError:
                response_data = {'raw': response.text}
            raise DeliveryError(
                f"SMS gateway returned {response.status_code}",
                channel=Channel.SMS.value,
                retryable=retryable,
                response_data=response_data
            )

        try:
            data = response.json()
        except ValueError:
            data = {}
        # The gateway has accepted the message, so an unexpected body must not trigger a resend
        if not isinstance(data, dict):
            logger.warning(f"Unexpected SMS gateway response body: {data!r}")
            data = {}

        message_id = data.get('id') or data.get('sid') or data.get('message_id')
        status = DELIVERED if str(data.get('status', '')).upper() == DELIVERED else SENT
        logger.info(f"SMS sent to {recipient}: {message_id} ({status})")
        return SendResult(message_id=message_id, status=status)


def create_message_sender(config) -> ChannelRouter:
    """Build the channel router from app config."""
    return ChannelRouter({
        Channel.EMAIL: ResendEmailSender(
            api_key=config.get('RESEND_API_KEY'),
            from_email=config.get('EMAIL_FROM', 'reviews@reputation-engine.local')
        ),
        Channel.SMS: HttpSmsSender(
            gateway_url=config.get('SMS_GATEWAY_URL'),
            api_token=config.get('SMS_GATEWAY_TOKEN'),
            from_number=config.get('SMS_FROM_NUMBER'),
            timeout=int(config.get('SMS_GATEWAY_TIMEOUT', 15))
        ),
    })
