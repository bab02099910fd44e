"""Duplicate detection and settlement matching against the ledger."""

from reconciliation.duplicates import DuplicateCheck, MatchedOn, check_duplicate, check_reference
from reconciliation.settlement import SettlementCandidates, find_candidates, settle

__all__ = [
    "DuplicateCheck",
    "MatchedOn",
    "check_duplicate",
    "check_reference",
    "SettlementCandidates",
    "find_candidates",
    "settle",
]
