"""
Unit tests for the message sender adapters.

This module tests the channel router, the Resend email sender and the HTTP
SMS gateway sender with mocked external dependencies.
"""

import pytest
from unittest.mock import Mock, patch
import requests

from src.models import Channel
from src.services.automation.errors import DeliveryError
from src.services.automation.senders import (
    ChannelRouter,
    HttpSmsSender,
    MessageSender,
    ResendEmailSender,
    SendResult,
    create_message_sender,
)


class TestChannelRouter:
    """Test cases for ChannelRouter class."""

    def test_routes_by_channel(self):
        email = Mock(spec=MessageSender)
        email.send.return_value = SendResult(message_id='e-1')
        sms = Mock(spec=MessageSender)

        router = ChannelRouter({Channel.EMAIL: email, 'SMS': sms})
        result = router.send('EMAIL', 'jane@example.com', 'Hi', 'Body')

        assert result.message_id == 'e-1'
        email.send.assert_called_once_with('EMAIL', 'jane@example.com', 'Hi', 'Body')
        sms.send.assert_not_called()

    def test_missing_channel_is_not_retryable(self):
        router = ChannelRouter()

        with pytest.raises(DeliveryError) as exc_info:
            router.send('SMS', '+15550100', None, 'Body')

        assert exc_info.value.retryable is False
        assert exc_info.value.channel == 'SMS'


class TestResendEmailSender:
    """Test cases for ResendEmailSender class."""

    @patch('src.services.automation.senders.resend')
    def test_send_success(self, mock_resend):
        mock_resend.Emails.send.return_value = {'id': 'email-123'}
        sender = ResendEmailSender(api_key='re_test', from_email='reviews@acme.test')

        result = sender.send('EMAIL', 'jane@example.com', 'How did we do?', '<p>Hi</p>')

        assert result.message_id == 'email-123'
        assert result.delivered is False
        mock_resend.Emails.send.assert_called_once_with({
            'from': 'reviews@acme.test',
            'to': 'jane@example.com',
            'subject': 'How did we do?',
            'html': '<p>Hi</p>'
        })

    @patch('src.services.automation.senders.resend')
    def test_send_failure_is_retryable(self, mock_resend):
        mock_resend.Emails.send.side_effect = Exception("Resend API error")
        sender = ResendEmailSender(api_key='re_test', from_email='reviews@acme.test')

        with pytest.raises(DeliveryError) as exc_info:
            sender.send('EMAIL', 'jane@example.com', 'Subject', 'Body')

        assert exc_info.value.retryable is True
        assert 'Resend API error' in str(exc_info.value)

    @patch('src.services.automation.senders.resend')
    def test_not_configured(self, mock_resend):
        sender = ResendEmailSender(api_key=None, from_email='reviews@acme.test')

        with pytest.raises(DeliveryError) as exc_info:
            sender.send('EMAIL', 'jane@example.com', 'Subject', 'Body')

        assert exc_info.value.retryable is False
        mock_resend.Emails.send.assert_not_called()


class TestHttpSmsSender:
    """Test cases for HttpSmsSender class."""

    @pytest.fixture
    def sender(self):
        return HttpSmsSender('https://sms.example.test/messages', api_token='token', from_number='+15550000')

    def mock_response(self, status_code, data=None):
        response = Mock()
        response.status_code = status_code
        response.json.return_value = data or {}
        response.text = ''
        return response

    @patch('src.services.automation.senders.requests.post')
    def test_send_success(self, mock_post, sender):
        mock_post.return_value = self.mock_response(200, {'id': 'sms-1', 'status': 'queued'})

        result = sender.send('SMS', '+15550100', None, 'Thanks!')

        assert result.message_id == 'sms-1'
        assert result.status == 'SENT'
        _, kwargs = mock_post.call_args
        assert kwargs['json'] == {'to': '+15550100', 'body': 'Thanks!', 'from': '+15550000'}
        assert kwargs['headers']['Authorization'] == 'Bearer token'
        assert kwargs['timeout'] == 15

    @patch('src.services.automation.senders.requests.post')
    def test_synchronous_delivery(self, mock_post, sender):
        mock_post.return_value = self.mock_response(200, {'sid': 'sms-2', 'status': 'delivered'})

        result = sender.send('SMS', '+15550100', None, 'Thanks!')

        assert result.message_id == 'sms-2'
        assert result.delivered is True

    @pytest.mark.parametrize('body', [[{'id': 'x'}], 'accepted', 42])
    @patch('src.services.automation.senders.requests.post')
    def test_accepted_with_non_object_body(self, mock_post, body, sender):
        mock_post.return_value = self.mock_response(200, body)

        result = sender.send('SMS', '+15550100', None, 'Thanks!')

        assert result.status == 'SENT'
        assert result.message_id is None
        assert mock_post.call_count == 1

    @pytest.mark.parametrize('status_code,retryable', [
        (500, True),
        (503, True),
        (429, True),
        (400, False),
        (404, False),
    ])
    @patch('src.services.automation.senders.requests.post')
    def test_error_status(self, mock_post, status_code, retryable, sender):
        mock_post.return_value = self.mock_response(status_code, {'error': 'nope'})

        with pytest.raises(DeliveryError) as exc_info:
            sender.send('SMS', '+15550100', None, 'Thanks!')

        assert exc_info.value.retryable is retryable
        assert exc_info.value.response_data == {'error': 'nope'}

    @patch('src.services.automation.senders.requests.post')
    def test_network_error_is_retryable(self, mock_post, sender):
        mock_post.side_effect = requests.exceptions.ConnectionError("connection refused")

        with pytest.raises(DeliveryError) as exc_info:
            sender.send('SMS', '+15550100', None, 'Thanks!')

        assert exc_info.value.retryable is True

    def test_not_configured(self):
        with pytest.raises(DeliveryError) as exc_info:
            HttpSmsSender(None).send('SMS', '+15550100', None, 'Thanks!')

        assert exc_info.value.retryable is False


class TestCreateMessageSender:

    def test_builds_router_from_config(self):
        router = create_message_sender({
            'RESEND_API_KEY': 're_test',
            'EMAIL_FROM': 'reviews@acme.test',
            'SMS_GATEWAY_URL': 'https://sms.example.test/messages',
            'SMS_GATEWAY_TIMEOUT': '30'
        })

        assert isinstance(router.senders['EMAIL'], ResendEmailSender)
        assert router.senders['EMAIL'].from_email == 'reviews@acme.test'
        assert isinstance(router.senders['SMS'], HttpSmsSender)
        assert router.senders['SMS'].timeout == 30
