"""Name Normalization Utilities.

This module provides functions to normalize vendor and category names
for the advisory suggestions offered on AI extracted documents:
1. Case-folds
2. Collapses whitespace
3. Optionally drops Brazilian company-type suffixes (LTDA, ME, EIRELI...)

Matching is substring containment of the hint in the candidate name, the
same rule operators see in the review screen. Empty hints never match.

Examples:
    "Papelaria Central LTDA" contains "central"      -> match
    "Distribuidora Sul S/A"  contains "distribuidora" -> match
"""

import re
from typing import Iterable, Optional

from core.models import Category, Vendor


# Company-type suffixes that carry no identity
BUSINESS_SUFFIXES = {
    "LTDA", "ME", "EPP", "EIRELI", "SA", "S/A", "S.A.", "S.A", "MEI", "CIA", "LTDA.",
}


def normalize_name(name: Optional[str], drop_suffixes: bool = False) -> str:
    """Case-fold and collapse whitespace; optionally drop company-type suffixes.

    Args:
        name: Raw name
        drop_suffixes: Remove trailing LTDA / ME / S/A style tokens

    Returns:
        Normalized name ("" for None)
    """
    if not name:
        return ""
    tokens = re.split(r"\s+", name.strip())
    if drop_suffixes:
        while tokens and tokens[-1].upper().strip(",") in BUSINESS_SUFFIXES:
            tokens.pop()
    return " ".join(tokens).casefold()


def contains_hint(candidate: Optional[str], hint: Optional[str]) -> bool:
    """True when ``hint`` occurs in ``candidate`` ignoring case.

    >>> contains_hint("Papelaria Central LTDA", "CENTRAL")
    True
    >>> contains_hint("Papelaria Central LTDA", "")
    False
    """
    needle = normalize_name(hint)
    if not needle:
        return False
    return needle in normalize_name(candidate)


def suggest_vendor(hint: Optional[str], vendors: Iterable[Vendor]) -> Optional[Vendor]:
    """First vendor whose legal or trade name contains the hint."""
    for vendor in vendors:
        if contains_hint(vendor.legal_name, hint) or contains_hint(vendor.trade_name, hint):
            return vendor
    return None


def suggest_category(hint: Optional[str], categories: Iterable[Category]) -> Optional[Category]:
    """First category whose name contains the hint."""
    for category in categories:
        if contains_hint(category.name, hint):
            return category
    return None
