"""Inference services for unstructured payable documents.

Two backends return the same JSON payload (see ``document_ai.normalize_response``):

- EndpointInferenceService: POSTs the file as base64 to an HTTP endpoint
- OpenAIVisionService: asks an OpenAI vision model directly, rendering PDF
  pages to PNG with PyMuPDF

Request shape sent to the endpoint:
    {"image_base64": ..., "image_mime_type": ...}   for images
    {"pdf_base64": ...}                             for PDFs
"""

import asyncio
import base64
import json
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Tuple

import aiohttp
import fitz
import openai

from core.config import Settings
from core.errors import ExtractionServiceError
from core.observability.logging import get_logger

logger = get_logger(__name__)


EXTRACTION_PROMPT = """Você recebe a imagem de um documento financeiro brasileiro
(nota fiscal, boleto, recibo ou comprovante de pagamento).

Decida a intenção:
- "NOVA_CONTA" quando o documento cria uma obrigação a pagar
- "DAR_BAIXA" quando o documento comprova o pagamento de uma conta existente

Responda somente com JSON neste formato (valores em centavos, datas YYYY-MM-DD):
{
  "intencao": "NOVA_CONTA" | "DAR_BAIXA",
  "conta_pagar": {
    "descricao": str, "numero_nota": str | null, "chave_nfe": str | null,
    "valor_total_centavos": int, "data_emissao": str | null, "referencia": str | null,
    "fornecedor_nome_sugerido": str | null, "fornecedor_cnpj": str | null,
    "categoria_sugerida": str | null
  },
  "parcelas": [{"parcela_num": int, "valor_parcela_centavos": int, "vencimento": str | null}],
  "baixa": {
    "valor_pago_centavos": int, "data_pagamento": str | null, "juros_centavos": int,
    "desconto_centavos": int, "multa_centavos": int, "referencia_documento": str | null
  } | null,
  "confianca": int (0-100),
  "observacoes": str
}
"""


# =============================================================================
# Request Shape
# =============================================================================

def is_pdf(mime_type: str) -> bool:
    return (mime_type or "").lower() == "application/pdf"


def build_request(content: bytes, mime_type: str) -> Dict[str, str]:
    """Build the endpoint request body for an image or PDF."""
    encoded = base64.b64encode(content).decode("ascii")
    if is_pdf(mime_type):
        return {"pdf_base64": encoded}
    return {"image_base64": encoded, "image_mime_type": mime_type}


def parse_json_str(raw_text: str) -> dict:
    """Parse JSON from a model response, extracting the JSON block if needed."""
    try:
        return json.loads(raw_text)
    except json.JSONDecodeError:
        start = raw_text.find("{")
        end = raw_text.rfind("}")
        if start >= 0 and end > start:
            return json.loads(raw_text[start:end + 1])
        raise


class DocumentInferenceService(Protocol):
    """Recognizes the fields of an image or PDF and returns the raw JSON payload."""

    async def analyze(self, content: bytes, mime_type: str) -> Dict[str, Any]:
        ...


# =============================================================================
# HTTP Endpoint Backend
# =============================================================================

@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_retries: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    exponential_base: float = 2.0
    retry_on_status: Tuple[int, ...] = (429, 500, 502, 503, 504)

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for retry attempt (exponential backoff)."""
        delay = self.base_delay * (self.exponential_base ** attempt)
        return min(delay, self.max_delay)


@dataclass
class EndpointConfig:
    url: str
    api_key: Optional[str] = None
    timeout_seconds: int = 120
    retry_config: RetryConfig = field(default_factory=RetryConfig)


class EndpointInferenceService:
    """Inference through an HTTP endpoint that accepts the base64 request shape.

    Usage:
        service = EndpointInferenceService(EndpointConfig(url=...))
        payload = await service.analyze(pdf_bytes, "application/pdf")
    """

    def __init__(self, config: EndpointConfig, session: Optional[aiohttp.ClientSession] = None):
        self.config = config
        self._session = session

    def _get_headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    async def analyze(self, content: bytes, mime_type: str) -> Dict[str, Any]:
        body = build_request(content, mime_type)
        if self._session is not None:
            return await self._post(self._session, body)
        async with aiohttp.ClientSession() as session:
            return await self._post(session, body)

    async def _post(self, session: aiohttp.ClientSession, body: Dict[str, str]) -> Dict[str, Any]:
        """POST with retries on 429/5xx and transport errors.

        Raises:
            ExtractionServiceError: Non-retryable status, invalid JSON, or retries exhausted
        """
        retry_config = self.config.retry_config
        timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)
        last_error: Optional[Exception] = None

        for attempt in range(retry_config.max_retries + 1):
            try:
                async with session.post(
                    self.config.url,
                    headers=self._get_headers(),
                    json=body,
                    timeout=timeout,
                ) as response:
                    response_text = await response.text()

                    if response.status < 400:
                        try:
                            return json.loads(response_text) if response_text else {}
                        except json.JSONDecodeError as e:
                            raise ExtractionServiceError(
                                f"Inference service returned invalid JSON: {e}",
                                response.status,
                            ) from e

                    if response.status in retry_config.retry_on_status and attempt < retry_config.max_retries:
                        delay = retry_config.get_delay(attempt)
                        if response.status == 429 and "Retry-After" in response.headers:
                            delay = retry_after_delay(
                                response.headers["Retry-After"], delay, retry_config.max_delay
                            )
                        logger.warning(
                            f"Inference request failed with {response.status}, "
                            f"retrying in {delay:.1f}s (attempt {attempt + 1}/{retry_config.max_retries})"
                        )
                        await asyncio.sleep(delay)
                        continue

                    raise ExtractionServiceError(
                        _error_message(response_text) or f"Inference service error {response.status}",
                        response.status,
                    )

            except ExtractionServiceError:
                raise
            except (asyncio.TimeoutError, aiohttp.ClientError) as e:
                last_error = e
                if attempt < retry_config.max_retries:
                    delay = retry_config.get_delay(attempt)
                    logger.warning(
                        f"Inference request failed with {type(e).__name__}: {e}, "
                        f"retrying in {delay:.1f}s"
                    )
                    await asyncio.sleep(delay)
                    continue

        raise ExtractionServiceError(
            f"Inference request failed after {retry_config.max_retries} retries: {last_error}"
        )


def retry_after_delay(header: str, fallback: float, max_delay: float) -> float:
    """Seconds to wait for a Retry-After header (delta-seconds or HTTP-date).

    Unparsable values fall back to ``fallback``.
    """
    try:
        seconds = float(header)
    except (TypeError, ValueError):
        try:
            when = parsedate_to_datetime(header)
        except (TypeError, ValueError, IndexError):
            logger.warning(f"Ignoring unparsable Retry-After header {header!r}")
            return fallback
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        seconds = (when - datetime.now(timezone.utc)).total_seconds()
    return min(max(seconds, 0.0), max_delay)


def _error_message(response_text: str) -> Optional[str]:
    """The service's own error message, when the body carries one."""
    try:
        data = json.loads(response_text)
    except (json.JSONDecodeError, TypeError):
        return response_text.strip() or None
    if isinstance(data, dict) and data.get("error"):
        return str(data["error"])
    return None


# =============================================================================
# OpenAI Vision Backend
# =============================================================================

def page_to_png_b64(page: fitz.Page, zoom: float = 2.0) -> str:
    """Convert a PDF page to base64-encoded PNG for vision API."""
    mat = fitz.Matrix(zoom, zoom)
    pix = page.get_pixmap(matrix=mat, alpha=False)
    png_bytes = pix.tobytes("png")
    return base64.b64encode(png_bytes).decode("ascii")


def pdf_to_images(content: bytes, max_pages: int = 5) -> List[str]:
    """Render the first ``max_pages`` pages of a PDF as base64 PNGs."""
    doc = fitz.open(stream=content, filetype="pdf")
    try:
        return [page_to_png_b64(doc.load_page(i)) for i in range(min(doc.page_count, max_pages))]
    finally:
        doc.close()


class OpenAIVisionService:
    """Inference through the OpenAI chat completions vision API."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        timeout_seconds: int = 120,
        max_attempts: int = 3,
        client: Optional[openai.AsyncOpenAI] = None,
    ):
        self.model = model
        self.max_attempts = max_attempts
        self._client = client or openai.AsyncOpenAI(api_key=api_key, timeout=float(timeout_seconds))

    def _image_content(self, content: bytes, mime_type: str) -> List[Dict[str, Any]]:
        if is_pdf(mime_type):
            urls = [f"data:image/png;base64,{img}" for img in pdf_to_images(content)]
        else:
            encoded = base64.b64encode(content).decode("ascii")
            urls = [f"data:{mime_type};base64,{encoded}"]
        return [{"type": "image_url", "image_url": {"url": url, "detail": "high"}} for url in urls]

    async def analyze(self, content: bytes, mime_type: str) -> Dict[str, Any]:
        message = [{"type": "text", "text": EXTRACTION_PROMPT}]
        message.extend(self._image_content(content, mime_type))

        logger.info("Sending %d image(s) to %s", len(message) - 1, self.model)

        for attempt in range(self.max_attempts):
            try:
                response = await self._client.chat.completions.create(
                    model=self.model,
                    messages=[{"role": "user", "content": message}],
                    temperature=0,
                    response_format={"type": "json_object"},
                )
                raw_text = response.choices[0].message.content or ""
                try:
                    return parse_json_str(raw_text)
                except json.JSONDecodeError as e:
                    raise ExtractionServiceError(f"Model returned invalid JSON: {e}") from e
            except openai.RateLimitError:
                logger.warning(f"Rate limited, retrying (attempt {attempt + 1}/{self.max_attempts})")
                await asyncio.sleep(RetryConfig().get_delay(attempt))
            except openai.APITimeoutError:
                logger.warning(f"Timeout, retrying (attempt {attempt + 1}/{self.max_attempts})")
                await asyncio.sleep(RetryConfig().get_delay(attempt))
            except openai.APIError as e:
                raise ExtractionServiceError(f"OpenAI request failed: {e}") from e

        raise ExtractionServiceError(f"Failed to analyze document after {self.max_attempts} attempts")


# =============================================================================
# Factory
# =============================================================================

def build_inference_service(settings: Settings) -> DocumentInferenceService:
    """Build the configured inference backend.

    Raises:
        ExtractionServiceError: If the selected backend is not configured
    """
    if settings.inference_backend == "openai":
        if not settings.openai_api_key:
            raise ExtractionServiceError("OPENAI_API_KEY is not set")
        return OpenAIVisionService(
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            timeout_seconds=settings.inference_timeout_seconds,
        )

    if not settings.inference_endpoint_url:
        raise ExtractionServiceError("INFERENCE_ENDPOINT_URL is not set")
    return EndpointInferenceService(EndpointConfig(
        url=settings.inference_endpoint_url,
        api_key=settings.inference_api_key,
        timeout_seconds=settings.inference_timeout_seconds,
    ))
