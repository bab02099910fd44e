"""Vendor Resolver Algorithm.

This module resolves a document issuer to a ledger vendor:
1. Normalizes the tax ID to digits
2. Looks up the vendor by exact tax ID (fast path, no field updates)
3. Creates the vendor when absent
4. Re-reads when a concurrent insert wins the unique constraint

Existing vendors are never updated; a changed trade name on a later
document is not propagated.
"""

import sqlite3
from datetime import datetime
from typing import Optional

from core.errors import VendorPersistenceError
from core.models import only_digits
from core.observability.logging import get_logger
from ledger.db import LedgerStore
from vendor_resolver.models import MatchType, VendorResolution

logger = get_logger(__name__)


class VendorResolver:
    """Resolves issuers to ledger vendors by tax ID.

    Example:
        resolver = VendorResolver(store)
        resolution = resolver.resolve("12.345.678/0001-90", "Papelaria Central LTDA")
        vendor_id = resolution.vendor_id
    """

    def __init__(self, store: LedgerStore):
        self.store = store

    def resolve(
        self,
        tax_id: str,
        legal_name: str,
        trade_name: Optional[str] = None,
    ) -> VendorResolution:
        """Return the vendor for ``tax_id``, creating it when absent.

        Args:
            tax_id: CNPJ/CPF, punctuation allowed
            legal_name: Razão social, stored on creation
            trade_name: Nome fantasia; defaults to the legal name on creation

        Returns:
            VendorResolution with the stable vendor id

        Raises:
            VendorPersistenceError: If lookup and creation both fail
        """
        digits = only_digits(tax_id)
        if not digits:
            raise VendorPersistenceError(f"Vendor tax ID {tax_id!r} has no digits")

        try:
            existing = self.store.find_vendor_by_tax_id(digits)
        except sqlite3.Error as e:
            raise VendorPersistenceError(f"Vendor lookup failed for {digits}: {e}") from e

        if existing is not None:
            logger.debug("Vendor %s found for tax ID %s", existing.id, digits)
            return VendorResolution(
                vendor_id=existing.id,
                created=False,
                tax_id=digits,
                match_type=MatchType.EXISTING,
                resolved_at=datetime.utcnow(),
            )

        try:
            vendor_id = self.store.insert_vendor(digits, legal_name, trade_name or legal_name)
        except sqlite3.IntegrityError:
            # Another import created the same tax ID between lookup and insert
            raced = self.store.find_vendor_by_tax_id(digits)
            if raced is None:
                raise VendorPersistenceError(f"Could not create vendor {digits}")
            logger.info("Vendor %s created concurrently, reusing", raced.id)
            return VendorResolution(
                vendor_id=raced.id,
                created=False,
                tax_id=digits,
                match_type=MatchType.RACE_REREAD,
                resolved_at=datetime.utcnow(),
            )
        except sqlite3.Error as e:
            raise VendorPersistenceError(f"Could not create vendor {digits}: {e}") from e

        logger.info(
            "Created vendor %s",
            vendor_id,
            extra_fields={"tax_id": digits, "legal_name": legal_name},
        )
        return VendorResolution(
            vendor_id=vendor_id,
            created=True,
            tax_id=digits,
            match_type=MatchType.CREATED,
            resolved_at=datetime.utcnow(),
        )
