"""Vendor Resolver Data Models.

This module defines the Pydantic models for vendor resolution:
- VendorResolution: The result of resolving an issuer by tax ID
- MatchSuggestion: Advisory vendor/category pre-fill for AI extracted documents
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class MatchType(str, Enum):
    """How the vendor was obtained."""
    EXISTING = "existing"        # Found by tax ID
    CREATED = "created"          # Inserted by this resolution
    RACE_REREAD = "race_reread"  # Insert collided with a concurrent one; re-read


class VendorResolution(BaseModel):
    """Result of vendor resolution.

    Attributes:
        vendor_id: Ledger vendor id
        created: Whether this call inserted the vendor
        tax_id: Digits-only tax ID used for lookup and storage
        match_type: How the vendor was obtained
    """
    vendor_id: int
    created: bool = False
    tax_id: str
    match_type: MatchType = Field(default=MatchType.EXISTING)
    resolved_at: Optional[datetime] = None


class MatchSuggestion(BaseModel):
    """Advisory pre-fill for a reviewed document. Never authoritative."""
    vendor_id: Optional[int] = None
    vendor_name: Optional[str] = None
    category_id: Optional[int] = None
    category_name: Optional[str] = None
