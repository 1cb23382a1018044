"""
Unit tests for the OCR provider layer.

不调用真实 API：anthropic.Anthropic / openai.OpenAI 都被 patch 掉。
"""
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from rxorders.exceptions import ExternalServiceError
from rxorders.ocr.base import DEFAULT_CONFIDENCE
from rxorders.ocr.extraction import extract_medication_details
from rxorders.ocr.factory import get_ocr_service
from rxorders.ocr.services import ClaudeVisionOCRService, OpenAIVisionOCRService


# -------------------------------------------------------------------
# parse_response
# -------------------------------------------------------------------

class TestParseResponse:

    def setup_method(self):
        self.service = ClaudeVisionOCRService()

    def test_plain_json(self):
        result = self.service.parse_response('{"text": "Rx: Amoxicillin 500mg", "confidence": 0.92}')

        assert result.text == 'Rx: Amoxicillin 500mg'
        assert result.confidence == 0.92
        assert result.provider == 'anthropic'

    def test_fenced_json(self):
        raw = '```json\n{"text": "Qty: 30", "confidence": 0.7}\n```'

        assert self.service.parse_response(raw).text == 'Qty: 30'

    def test_missing_confidence_uses_default(self):
        assert self.service.parse_response('{"text": "Rx"}').confidence == DEFAULT_CONFIDENCE

    def test_non_json_reply_is_taken_as_text(self):
        result = self.service.parse_response('Rx: Ibuprofen 200mg')

        assert result.text == 'Rx: Ibuprofen 200mg'
        assert result.confidence == DEFAULT_CONFIDENCE

    @pytest.mark.parametrize('confidence, expected', [(1.7, 1.0), (-0.2, 0.0), ('high', DEFAULT_CONFIDENCE)])
    def test_confidence_is_clamped(self, confidence, expected):
        raw = '{"text": "Rx", "confidence": %s}' % (f'"{confidence}"' if isinstance(confidence, str) else confidence)

        assert self.service.parse_response(raw).confidence == expected

    @pytest.mark.parametrize('literal', ['NaN', 'Infinity', '-Infinity'])
    def test_non_finite_confidence_uses_default(self, literal):
        result = self.service.parse_response('{"text": "Rx: X 10mg", "confidence": %s}' % literal)

        assert result.confidence == DEFAULT_CONFIDENCE

    @pytest.mark.parametrize('raw', ['{"text": ["Rx: X 10mg"]}', '{"text": 42, "confidence": 0.9}'])
    def test_non_string_text_is_a_provider_error(self, raw):
        with pytest.raises(ExternalServiceError) as exc_info:
            self.service.parse_response(raw)
        assert exc_info.value.code == 'OCR_BAD_RESPONSE'

    @pytest.mark.parametrize('raw', ['', '{"text": "", "confidence": 0}', '   '])
    def test_no_text_is_an_error(self, raw):
        with pytest.raises(ExternalServiceError) as exc_info:
            self.service.parse_response(raw)
        assert exc_info.value.code == 'OCR_NO_TEXT'


# -------------------------------------------------------------------
# Field extraction
# -------------------------------------------------------------------

class TestExtractMedicationDetails:

    def test_typical_prescription(self):
        details = extract_medication_details('Rx: Amoxicillin 500mg\nQty: 30')

        assert details.to_dict() == {'name': 'Amoxicillin', 'dosage': '500mg', 'quantity': 30}

    def test_tablet_count(self):
        details = extract_medication_details('1. Paracetamol 1g\nTake 2 daily\n20 tablets')

        assert details.name == 'Paracetamol'
        assert details.dosage == '1g'
        assert details.quantity == 20

    def test_missing_fields_are_none(self):
        details = extract_medication_details('Rx: Cough syrup')

        assert details.name == 'Cough syrup'
        assert details.dosage is None
        assert details.quantity is None

    def test_nothing_recognisable(self):
        assert extract_medication_details('illegible').is_empty()
        assert extract_medication_details('').is_empty()


# -------------------------------------------------------------------
# Factory
# -------------------------------------------------------------------

class TestFactory:

    def test_default_provider(self, settings):
        settings.OCR_PROVIDER = 'anthropic'
        assert isinstance(get_ocr_service(), ClaudeVisionOCRService)

    def test_openai_provider(self, settings):
        settings.OCR_PROVIDER = 'openai'
        assert isinstance(get_ocr_service(), OpenAIVisionOCRService)

    def test_unknown_provider(self, settings):
        settings.OCR_PROVIDER = 'tesseract'
        with pytest.raises(ValueError, match='tesseract'):
            get_ocr_service()


# -------------------------------------------------------------------
# Providers
# -------------------------------------------------------------------

def _claude_reply(text):
    return SimpleNamespace(content=[SimpleNamespace(text=text)])


def _openai_reply(text):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=text))])


class TestClaudeVisionOCRService:

    def test_missing_api_key(self, monkeypatch):
        monkeypatch.delenv('ANTHROPIC_API_KEY', raising=False)

        with pytest.raises(ExternalServiceError) as exc_info:
            ClaudeVisionOCRService().extract('https://storage.example.com/rx.jpg')
        assert exc_info.value.code == 'OCR_NOT_CONFIGURED'

    @patch('anthropic.Anthropic')
    def test_url_image(self, mock_client_cls, monkeypatch):
        monkeypatch.setenv('ANTHROPIC_API_KEY', 'test-key')
        client = MagicMock()
        client.messages.create.return_value = _claude_reply('{"text": "Rx: Amoxicillin 500mg", "confidence": 0.9}')
        mock_client_cls.return_value = client

        result = ClaudeVisionOCRService().extract('https://storage.example.com/rx.jpg')

        assert result.text == 'Rx: Amoxicillin 500mg'
        mock_client_cls.assert_called_once_with(api_key='test-key')
        content = client.messages.create.call_args.kwargs['messages'][0]['content']
        assert content[0] == {'type': 'image', 'source': {'type': 'url', 'url': 'https://storage.example.com/rx.jpg'}}

    @patch('anthropic.Anthropic')
    def test_pdf_data_uri_is_sent_as_document(self, mock_client_cls, monkeypatch):
        monkeypatch.setenv('ANTHROPIC_API_KEY', 'test-key')
        client = MagicMock()
        client.messages.create.return_value = _claude_reply('{"text": "Rx", "confidence": 0.8}')
        mock_client_cls.return_value = client

        ClaudeVisionOCRService().extract('data:application/pdf;base64,JVBERi0=')

        block = client.messages.create.call_args.kwargs['messages'][0]['content'][0]
        assert block['type'] == 'document'
        assert block['source'] == {'type': 'base64', 'media_type': 'application/pdf', 'data': 'JVBERi0='}


class TestOpenAIVisionOCRService:

    @patch('openai.OpenAI')
    def test_extract(self, mock_client_cls, monkeypatch):
        monkeypatch.setenv('OPENAI_API_KEY', 'test-key')
        client = MagicMock()
        client.chat.completions.create.return_value = _openai_reply('{"text": "Qty: 30", "confidence": 0.6}')
        mock_client_cls.return_value = client

        result = OpenAIVisionOCRService().extract('https://storage.example.com/rx.png')

        assert result.text == 'Qty: 30'
        assert result.confidence == 0.6
        assert result.provider == 'openai'

    def test_pdf_not_supported(self, monkeypatch):
        monkeypatch.setenv('OPENAI_API_KEY', 'test-key')

        with pytest.raises(ExternalServiceError) as exc_info:
            OpenAIVisionOCRService().extract('https://storage.example.com/rx.pdf')
        assert exc_info.value.code == 'OCR_UNSUPPORTED_FORMAT'
