"""AI extraction tests: validation, normalization and inference backends."""

import asyncio
import base64
import json
from datetime import date
from types import SimpleNamespace

import fitz
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from core.errors import ExtractionServiceError, UnsupportedDocument
from core.models import Category, Vendor
from extraction.document_ai import (
    DocumentIntent,
    extract_document,
    normalize_response,
    suggest_matches,
    validate_upload,
)
from extraction.inference import (
    EndpointConfig,
    EndpointInferenceService,
    OpenAIVisionService,
    RetryConfig,
    build_request,
    retry_after_delay,
    parse_json_str,
    pdf_to_images,
)


OBLIGATION = {
    "intencao": "NOVA_CONTA",
    "conta_pagar": {
        "descricao": "Conta de energia janeiro",
        "numero_nota": "98765",
        "chave_nfe": None,
        "valor_total_centavos": 45990,
        "data_emissao": "2024-01-10",
        "referencia": "UC 123",
        "fornecedor_nome_sugerido": "Energia",
        "fornecedor_cnpj": "11.222.333/0001-44",
        "categoria_sugerida": "energia",
    },
    "parcelas": [
        {"parcela_num": 1, "valor_parcela_centavos": 22995, "vencimento": "2024-02-10"},
        {"parcela_num": 2, "valor_parcela_centavos": 22995, "vencimento": None},
        {"parcela_num": 3, "valor_parcela_centavos": 0, "vencimento": None},
    ],
    "confianca": 87.6,
    "observacoes": "legível",
}

SETTLEMENT = {
    "intencao": "DAR_BAIXA",
    "conta_pagar": {"valor_total_centavos": 10250, "numero_nota": "555"},
    "baixa": {
        "valor_pago_centavos": 10250,
        "data_pagamento": "2024-03-05",
        "juros_centavos": 200,
        "multa_centavos": 50,
        "desconto_centavos": 0,
        "referencia_documento": "NFe 555",
    },
    "confianca": 140,
}


class FakeService:
    def __init__(self, payload):
        self.payload = payload
        self.calls = []

    async def analyze(self, content, mime_type):
        self.calls.append(mime_type)
        return self.payload


class TestValidateUpload:

    def test_accepts_images_and_pdf(self):
        validate_upload(b"x", "image/jpeg")
        validate_upload(b"x", "application/pdf")

    @pytest.mark.parametrize("content,mime", [
        (b"x", "text/plain"),
        (b"x", None),
        (b"", "image/png"),
        (b"x" * 11, "image/png"),
    ])
    def test_rejects(self, content, mime):
        with pytest.raises(UnsupportedDocument):
            validate_upload(content, mime, max_bytes=10)


class TestNormalizeResponse:

    def test_obligation(self):
        result = normalize_response(OBLIGATION, "conta.jpg")
        assert result.intent == DocumentIntent.NEW_OBLIGATION
        assert result.document.total_cents == 45990
        assert result.document.issue_date == date(2024, 1, 10)
        assert result.document.issuer_tax_id == "11222333000144"
        assert result.document.reference_key == "98765"
        assert [i.amount_cents for i in result.installments] == [22995, 22995]
        assert result.installments[1].due_date is None
        assert result.payment is None
        assert result.confidence == 88
        assert result.source_filename == "conta.jpg"

    def test_settlement(self):
        result = normalize_response(SETTLEMENT)
        assert result.intent == DocumentIntent.SETTLEMENT
        assert result.payment.amount_cents == 10250
        assert result.payment.expected_base_cents == 10000
        assert result.payment.payment_date == date(2024, 3, 5)
        assert result.payment.reference_hint == "NFe 555"
        assert result.confidence == 100

    def test_settlement_without_payment_block_uses_total(self):
        payload = {"intencao": "DAR_BAIXA", "conta_pagar": {"valor_total_centavos": 9900, "numero_nota": "12"}}
        result = normalize_response(payload)
        assert result.payment.amount_cents == 9900
        assert result.payment.reference_hint == "12"

    def test_error_is_surfaced_verbatim(self):
        with pytest.raises(ExtractionServiceError) as exc:
            normalize_response({"error": "Documento ilegível"})
        assert exc.value.message == "Documento ilegível"

    def test_non_object_payload(self):
        with pytest.raises(ExtractionServiceError):
            normalize_response(["not", "a", "dict"])

    def test_missing_fields_are_tolerated(self):
        result = normalize_response({})
        assert result.intent == DocumentIntent.NEW_OBLIGATION
        assert result.document.total_cents is None
        assert result.installments == []
        assert result.confidence == 0


class TestExtractDocument:

    def test_calls_service_after_validation(self):
        service = FakeService(OBLIGATION)
        result = asyncio.run(extract_document(b"img", "image/png", service, filename="a.png"))
        assert service.calls == ["image/png"]
        assert result.document.document_number == "98765"

    def test_rejected_upload_never_reaches_service(self):
        service = FakeService(OBLIGATION)
        with pytest.raises(UnsupportedDocument):
            asyncio.run(extract_document(b"", "image/png", service))
        assert service.calls == []

    def test_suggest_matches(self):
        extraction = normalize_response(OBLIGATION)
        vendors = [Vendor(id=4, tax_id="1", legal_name="Companhia de Energia SA")]
        categories = [Category(id=2, name="Energia Elétrica")]
        suggestion = suggest_matches(extraction, vendors, categories)
        assert suggestion.vendor_id == 4
        assert suggestion.category_id == 2


class TestRequestShape:

    def test_image_request(self):
        body = build_request(b"abc", "image/png")
        assert body == {"image_base64": base64.b64encode(b"abc").decode(), "image_mime_type": "image/png"}

    def test_pdf_request(self):
        assert set(build_request(b"%PDF", "application/pdf")) == {"pdf_base64"}

    def test_parse_json_from_wrapped_text(self):
        assert parse_json_str('Here it is: {"a": 1} thanks') == {"a": 1}
        with pytest.raises(json.JSONDecodeError):
            parse_json_str("no json")


class TestEndpointInferenceService:
    """Endpoint backend against a local aiohttp server."""

    def _run(self, handler, retries=2):
        async def scenario():
            app = web.Application()
            app.router.add_post("/analyze", handler)
            server = TestServer(app)
            await server.start_server()
            try:
                service = EndpointInferenceService(EndpointConfig(
                    url=str(server.make_url("/analyze")),
                    api_key="secret",
                    retry_config=RetryConfig(max_retries=retries, base_delay=0),
                ))
                return await service.analyze(b"img", "image/png")
            finally:
                await server.close()

        return asyncio.run(scenario())

    def test_retries_then_succeeds(self):
        calls = []

        async def handler(request):
            calls.append(request.headers.get("Authorization"))
            body = await request.json()
            assert body["image_mime_type"] == "image/png"
            if len(calls) == 1:
                return web.Response(status=503, text="busy")
            return web.json_response(OBLIGATION)

        assert self._run(handler)["intencao"] == "NOVA_CONTA"
        assert calls == ["Bearer secret", "Bearer secret"]

    def test_client_error_message_is_surfaced(self):
        async def handler(request):
            return web.json_response({"error": "Arquivo corrompido"}, status=400)

        with pytest.raises(ExtractionServiceError) as exc:
            self._run(handler)
        assert exc.value.message == "Arquivo corrompido"
        assert exc.value.status_code == 400

    def test_rate_limit_with_http_date_retry_after(self):
        calls = []

        async def handler(request):
            calls.append(1)
            if len(calls) == 1:
                return web.Response(status=429, headers={"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"})
            if len(calls) == 2:
                return web.Response(status=429, headers={"Retry-After": "later"})
            return web.json_response(OBLIGATION)

        assert self._run(handler)["intencao"] == "NOVA_CONTA"
        assert len(calls) == 3

    def test_retries_exhausted(self):
        async def handler(request):
            return web.Response(status=500, text="boom")

        with pytest.raises(ExtractionServiceError) as exc:
            self._run(handler, retries=1)
        assert exc.value.status_code == 500


class TestRetryAfter:

    def test_seconds_are_capped(self):
        assert retry_after_delay("5", 1.0, 30.0) == 5.0
        assert retry_after_delay("120", 1.0, 30.0) == 30.0

    def test_past_http_date_means_no_wait(self):
        assert retry_after_delay("Wed, 21 Oct 2015 07:28:00 GMT", 1.0, 30.0) == 0.0

    def test_unparsable_value_uses_backoff(self):
        assert retry_after_delay("soon", 4.0, 30.0) == 4.0


class TestOpenAIVisionService:

    def _client(self, content):
        async def create(**kwargs):
            self.request = kwargs
            return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])

        return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))

    def test_image_request_and_json_answer(self):
        service = OpenAIVisionService(api_key="k", client=self._client(json.dumps(SETTLEMENT)))
        payload = asyncio.run(service.analyze(b"img", "image/jpeg"))
        assert payload["intencao"] == "DAR_BAIXA"
        message = self.request["messages"][0]["content"]
        assert message[1]["image_url"]["url"].startswith("data:image/jpeg;base64,")
        assert self.request["response_format"] == {"type": "json_object"}

    def test_invalid_json(self):
        service = OpenAIVisionService(api_key="k", client=self._client("sorry"))
        with pytest.raises(ExtractionServiceError):
            asyncio.run(service.analyze(b"img", "image/jpeg"))

    def test_pdf_pages_are_rendered(self):
        doc = fitz.open()
        for _ in range(2):
            doc.new_page(width=200, height=200)
        pdf = doc.tobytes()
        doc.close()

        images = pdf_to_images(pdf)
        assert len(images) == 2
        assert base64.b64decode(images[0]).startswith(b"\x89PNG")
