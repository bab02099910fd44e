"""Vendor Resolver - Issuer to ledger vendor resolution.

This package resolves document issuers to vendors based on:
- Exact tax ID (CNPJ/CPF) lookup
- Lazy creation of unknown vendors
- Advisory name containment suggestions for reviewed documents

Usage:
    from vendor_resolver import VendorResolver

    resolver = VendorResolver(store)
    resolution = resolver.resolve(
        tax_id="12.345.678/0001-90",
        legal_name="Papelaria Central LTDA",
    )
    vendor_id = resolution.vendor_id
"""

from vendor_resolver.models import MatchSuggestion, MatchType, VendorResolution
from vendor_resolver.resolver import VendorResolver
from vendor_resolver.normalize import (
    contains_hint,
    normalize_name,
    suggest_category,
    suggest_vendor,
)

__all__ = [
    # Models
    "MatchSuggestion",
    "MatchType",
    "VendorResolution",
    # Resolver
    "VendorResolver",
    # Normalization
    "contains_hint",
    "normalize_name",
    "suggest_category",
    "suggest_vendor",
]
