"""
Unit tests for messaging providers. requests.post 被 patch 掉，不发真实请求。
"""
from unittest.mock import MagicMock, patch

import pytest
import requests

from rxorders.exceptions import ExternalServiceError
from rxorders.messaging import HttpMessagingService, LogMessagingService, get_messaging_service


class TestFactory:

    def test_log_provider(self, settings):
        settings.MESSAGING_PROVIDER = 'log'
        assert isinstance(get_messaging_service(), LogMessagingService)

    def test_http_provider(self, settings):
        settings.MESSAGING_PROVIDER = 'http'
        assert isinstance(get_messaging_service(), HttpMessagingService)

    def test_unknown_provider(self, settings):
        settings.MESSAGING_PROVIDER = 'pigeon'
        with pytest.raises(ValueError):
            get_messaging_service()


class TestLogMessagingService:

    def test_send_returns_id(self):
        assert LogMessagingService().send('+22996001122', 'hello', 'whatsapp') == 'log-whatsapp-+22996001122'


class TestHttpMessagingService:

    @patch('rxorders.messaging.requests.post')
    def test_posts_message(self, mock_post):
        response = MagicMock()
        response.json.return_value = {'id': 'wamid.123'}
        mock_post.return_value = response

        service = HttpMessagingService(webhook_url='https://gateway.example.com/send', timeout=5)
        message_id = service.send('+22996001122', 'Your order is ready', 'whatsapp')

        assert message_id == 'wamid.123'
        mock_post.assert_called_once_with(
            'https://gateway.example.com/send',
            json={'to': '+22996001122', 'channel': 'whatsapp', 'body': 'Your order is ready'},
            timeout=5,
        )

    @patch('rxorders.messaging.requests.post')
    def test_http_error_becomes_external_service_error(self, mock_post):
        response = MagicMock()
        response.raise_for_status.side_effect = requests.HTTPError('502 Bad Gateway')
        mock_post.return_value = response

        with pytest.raises(ExternalServiceError) as exc_info:
            HttpMessagingService(webhook_url='https://gateway.example.com/send').send('+22996001122', 'hi')

        assert exc_info.value.code == 'MESSAGING_FAILED'

    @patch('rxorders.messaging.requests.post', side_effect=requests.ConnectionError('refused'))
    def test_connection_error(self, mock_post):
        with pytest.raises(ExternalServiceError):
            HttpMessagingService(webhook_url='https://gateway.example.com/send').send('+22996001122', 'hi')

    def test_not_configured(self, settings):
        settings.MESSAGING_WEBHOOK_URL = ''

        with pytest.raises(ExternalServiceError) as exc_info:
            HttpMessagingService().send('+22996001122', 'hi')

        assert exc_info.value.code == 'MESSAGING_NOT_CONFIGURED'
