"""Extractors for structured (NF-e XML) and unstructured (image/PDF) documents."""

from extraction.nfe_xml import extract_nfe, is_nfe_candidate
from extraction.document_ai import (
    DocumentExtraction,
    DocumentIntent,
    ExtractedInstallment,
    ExtractedObligation,
    extract_document,
    normalize_response,
    suggest_matches,
    validate_upload,
)
from extraction.inference import (
    DocumentInferenceService,
    EndpointConfig,
    EndpointInferenceService,
    OpenAIVisionService,
    build_inference_service,
    build_request,
)

__all__ = [
    "extract_nfe",
    "is_nfe_candidate",
    "DocumentExtraction",
    "DocumentIntent",
    "ExtractedInstallment",
    "ExtractedObligation",
    "extract_document",
    "normalize_response",
    "suggest_matches",
    "validate_upload",
    "DocumentInferenceService",
    "EndpointConfig",
    "EndpointInferenceService",
    "OpenAIVisionService",
    "build_inference_service",
    "build_request",
]
