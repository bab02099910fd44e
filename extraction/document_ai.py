"""Unstructured document extraction (images and scanned PDFs).

Exposes:
- validate_upload(content, mime_type) -> None
- extract_document(content, mime_type, service) -> DocumentExtraction
- normalize_response(payload) -> DocumentExtraction
- suggest_matches(extraction, vendors, categories) -> MatchSuggestion

Field recognition is delegated to a ``DocumentInferenceService``; this module
only validates the input and normalizes whatever JSON comes back.
"""

from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from pydantic import Field

from core.errors import ExtractionServiceError, UnsupportedDocument
from core.models import (
    CanonicalBase,
    Category,
    DateValue,
    SettlementPayment,
    Vendor,
    only_digits,
    parse_date,
    parse_decimal,
)
from core.observability.logging import get_logger
from extraction.inference import DocumentInferenceService
from vendor_resolver.models import MatchSuggestion
from vendor_resolver.normalize import suggest_category, suggest_vendor

logger = get_logger(__name__)

MAX_UPLOAD_BYTES = 10 * 1024 * 1024

SETTLEMENT_INTENTS = {"DAR_BAIXA", "SETTLEMENT", "BAIXA"}


class DocumentIntent(str, Enum):
    NEW_OBLIGATION = "NEW_OBLIGATION"
    SETTLEMENT = "SETTLEMENT"


class ExtractedInstallment(CanonicalBase):
    """Installment as read by the inference service; due date may be missing."""
    sequence_number: int = Field(..., ge=1)
    amount_cents: int
    due_date: Optional[DateValue] = None


class ExtractedObligation(CanonicalBase):
    """New payable as read from an image/PDF. Every field is editable in review."""
    description: str = ""
    document_number: Optional[str] = None
    access_key: Optional[str] = None
    total_cents: Optional[int] = None
    issue_date: Optional[DateValue] = None
    reference: Optional[str] = None
    suggested_vendor_name: Optional[str] = None
    suggested_category: Optional[str] = None
    issuer_tax_id: Optional[str] = None

    @property
    def reference_key(self) -> str:
        return self.access_key or self.document_number or ""


class DocumentExtraction(CanonicalBase):
    """Normalized inference result."""
    intent: DocumentIntent = DocumentIntent.NEW_OBLIGATION
    document: ExtractedObligation = Field(default_factory=ExtractedObligation)
    installments: List[ExtractedInstallment] = Field(default_factory=list)
    payment: Optional[SettlementPayment] = None
    confidence: int = 0
    notes: str = ""
    source_filename: Optional[str] = None


# =============================================================================
# Input Validation
# =============================================================================

def validate_upload(content: bytes, mime_type: Optional[str], max_bytes: int = MAX_UPLOAD_BYTES) -> None:
    """Accept images and PDFs up to ``max_bytes``.

    Raises:
        UnsupportedDocument: Wrong type, empty, or too large
    """
    mime = (mime_type or "").lower()
    if not (mime.startswith("image/") or mime == "application/pdf"):
        raise UnsupportedDocument(f"Unsupported file type {mime_type!r}; expected an image or PDF")
    if not content:
        raise UnsupportedDocument("File is empty")
    if len(content) > max_bytes:
        raise UnsupportedDocument(
            f"File is {len(content)} bytes; the limit is {max_bytes} bytes"
        )


# =============================================================================
# Response Normalization
# =============================================================================

def _cents(value: Any) -> Optional[int]:
    """Integer cents from an int, float or numeric string; None when unusable."""
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = parse_decimal(value)
    except ValueError:
        return None
    if amount is None or not amount.is_finite():
        return None
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _date(value: Any):
    try:
        return parse_date(value)
    except (ValueError, TypeError):
        return None


def _str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _confidence(value: Any) -> int:
    try:
        score = int(round(float(value)))
    except (TypeError, ValueError):
        return 0
    return max(0, min(100, score))


def _installments(raw: Any) -> List[ExtractedInstallment]:
    if not isinstance(raw, list):
        return []
    installments = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        amount = _cents(entry.get("valor_parcela_centavos"))
        if amount is None or amount <= 0:
            continue
        installments.append(ExtractedInstallment(
            sequence_number=len(installments) + 1,
            amount_cents=amount,
            due_date=_date(entry.get("vencimento")),
        ))
    return installments


def _payment(raw: Any) -> Optional[SettlementPayment]:
    if not isinstance(raw, dict):
        return None
    amount = _cents(raw.get("valor_pago_centavos"))
    if amount is None or amount < 0:
        return None
    return SettlementPayment(
        amount_cents=amount,
        payment_date=_date(raw.get("data_pagamento")),
        interest_cents=_cents(raw.get("juros_centavos")) or 0,
        discount_cents=_cents(raw.get("desconto_centavos")) or 0,
        penalty_cents=_cents(raw.get("multa_centavos")) or 0,
        reference_hint=_str(raw.get("referencia_documento")),
    )


def normalize_response(payload: Any, filename: Optional[str] = None) -> DocumentExtraction:
    """Normalize the inference payload.

    Raises:
        ExtractionServiceError: If the payload carries ``error`` or is not an object
    """
    if not isinstance(payload, dict):
        raise ExtractionServiceError("Inference service returned an unexpected response")
    if payload.get("error"):
        raise ExtractionServiceError(str(payload["error"]))

    intent_raw = str(payload.get("intencao") or "").strip().upper()
    intent = DocumentIntent.SETTLEMENT if intent_raw in SETTLEMENT_INTENTS else DocumentIntent.NEW_OBLIGATION

    conta = payload.get("conta_pagar") if isinstance(payload.get("conta_pagar"), dict) else {}
    document = ExtractedObligation(
        description=_str(conta.get("descricao")) or "",
        document_number=_str(conta.get("numero_nota")),
        access_key=only_digits(_str(conta.get("chave_nfe"))) or None,
        total_cents=_cents(conta.get("valor_total_centavos")),
        issue_date=_date(conta.get("data_emissao")),
        reference=_str(conta.get("referencia")),
        suggested_vendor_name=_str(conta.get("fornecedor_nome_sugerido")),
        suggested_category=_str(conta.get("categoria_sugerida")),
        issuer_tax_id=only_digits(_str(conta.get("fornecedor_cnpj"))) or None,
    )

    payment = _payment(payload.get("baixa"))
    if intent == DocumentIntent.SETTLEMENT and payment is None and document.total_cents:
        # Receipts without a payment block: the amount read is the amount paid
        payment = SettlementPayment(
            amount_cents=document.total_cents,
            payment_date=document.issue_date,
            reference_hint=document.document_number or document.reference,
        )

    return DocumentExtraction(
        intent=intent,
        document=document,
        installments=_installments(payload.get("parcelas")),
        payment=payment,
        confidence=_confidence(payload.get("confianca")),
        notes=_str(payload.get("observacoes")) or "",
        source_filename=filename,
    )


# =============================================================================
# Extraction
# =============================================================================

async def extract_document(
    content: bytes,
    mime_type: str,
    service: DocumentInferenceService,
    filename: Optional[str] = None,
    max_bytes: int = MAX_UPLOAD_BYTES,
) -> DocumentExtraction:
    """Validate, send to the inference service, and normalize the answer.

    Raises:
        UnsupportedDocument: Input rejected before inference
        ExtractionServiceError: Service failure, surfaced verbatim
    """
    validate_upload(content, mime_type, max_bytes)
    payload = await service.analyze(content, mime_type)
    extraction = normalize_response(payload, filename)

    logger.info(
        "Document analyzed",
        extra_fields={
            "intent": extraction.intent.value,
            "confidence": extraction.confidence,
            "installments": len(extraction.installments),
        },
    )
    return extraction


def suggest_matches(
    extraction: DocumentExtraction,
    vendors: Iterable[Vendor],
    categories: Iterable[Category],
) -> MatchSuggestion:
    """Pre-fill vendor and category by name containment. Advisory only."""
    suggestion = MatchSuggestion()

    vendor = suggest_vendor(extraction.document.suggested_vendor_name, vendors)
    if vendor is not None:
        suggestion.vendor_id = vendor.id
        suggestion.vendor_name = vendor.legal_name

    category = suggest_category(extraction.document.suggested_category, categories)
    if category is not None:
        suggestion.category_id = category.id
        suggestion.category_name = category.name

    return suggestion
