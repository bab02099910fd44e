"""Ledger Database Operations.

This module handles all database operations for the accounts-payable ledger:
- Schema initialization
- Vendor lookup and creation (unique by tax ID)
- Payable document headers (unique by reference key)
- Installment rows, unpaid-installment search and settlement

Amounts are stored as integer cents; dates as ISO strings.
"""

import sqlite3
from datetime import date, datetime
from pathlib import Path
from typing import List, Optional

from core.errors import DuplicateReference
from core.models import Category, InstallmentRecord, Installment, PayableDocument, Vendor


DEFAULT_DB_PATH = Path(__file__).resolve().parents[1] / "ledger.db"


class LedgerStore:
    """Row store for vendors, categories, payable documents and installments.

    Each call opens and closes its own connection, so a store can be shared
    between the batch importer, activities and API handlers.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)

    def _connect(self, rows: bool = False) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        if rows:
            conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Initialize ledger tables.

        Creates:
        - vendors: one row per tax ID
        - categories: expense categories offered for suggestions
        - payable_documents: one header per imported document
        - installments: N rows per header
        """
        conn = self._connect()
        try:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS vendors (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tax_id TEXT NOT NULL UNIQUE,
                    legal_name TEXT NOT NULL,
                    trade_name TEXT,
                    active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS categories (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL UNIQUE
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS payable_documents (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    reference_key TEXT NOT NULL UNIQUE,
                    document_number TEXT,
                    access_key TEXT,
                    total_cents INTEGER NOT NULL,
                    vendor_id INTEGER,
                    installment_count INTEGER NOT NULL DEFAULT 1,
                    description TEXT NOT NULL DEFAULT '',
                    reference TEXT,
                    issue_date TEXT,
                    category_id INTEGER,
                    branch_id INTEGER,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (vendor_id) REFERENCES vendors(id)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS installments (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    document_id INTEGER NOT NULL,
                    sequence_number INTEGER NOT NULL,
                    amount_cents INTEGER NOT NULL,
                    due_date TEXT NOT NULL,
                    paid INTEGER NOT NULL DEFAULT 0,
                    paid_at TEXT,
                    paid_cents INTEGER,
                    FOREIGN KEY (document_id) REFERENCES payable_documents(id),
                    UNIQUE(document_id, sequence_number)
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_payable_documents_number
                ON payable_documents(document_number)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_installments_open
                ON installments(paid, due_date)
            """)

            conn.commit()
        finally:
            conn.close()

    # =========================================================================
    # Vendors
    # =========================================================================

    def find_vendor_by_tax_id(self, tax_id: str) -> Optional[Vendor]:
        conn = self._connect(rows=True)
        try:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM vendors WHERE tax_id = ?", (tax_id,))
            row = cursor.fetchone()
            return _row_to_vendor(row) if row else None
        finally:
            conn.close()

    def get_vendor(self, vendor_id: int) -> Optional[Vendor]:
        conn = self._connect(rows=True)
        try:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM vendors WHERE id = ?", (vendor_id,))
            row = cursor.fetchone()
            return _row_to_vendor(row) if row else None
        finally:
            conn.close()

    def insert_vendor(self, tax_id: str, legal_name: str, trade_name: Optional[str] = None) -> int:
        """Insert a vendor and return its id.

        Raises:
            sqlite3.IntegrityError: If the tax ID already exists
        """
        conn = self._connect()
        try:
            cursor = conn.cursor()
            cursor.execute("""
                INSERT INTO vendors (tax_id, legal_name, trade_name, active, created_at)
                VALUES (?, ?, ?, 1, ?)
            """, (tax_id, legal_name, trade_name, datetime.utcnow().isoformat()))
            conn.commit()
            return cursor.lastrowid
        finally:
            conn.close()

    def list_vendors(self, active_only: bool = True) -> List[Vendor]:
        conn = self._connect(rows=True)
        try:
            cursor = conn.cursor()
            if active_only:
                cursor.execute("SELECT * FROM vendors WHERE active = 1 ORDER BY legal_name")
            else:
                cursor.execute("SELECT * FROM vendors ORDER BY legal_name")
            return [_row_to_vendor(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    # =========================================================================
    # Categories
    # =========================================================================

    def add_category(self, name: str) -> Category:
        conn = self._connect()
        try:
            cursor = conn.cursor()
            cursor.execute("INSERT INTO categories (name) VALUES (?)", (name,))
            conn.commit()
            return Category(id=cursor.lastrowid, name=name)
        finally:
            conn.close()

    def list_categories(self) -> List[Category]:
        conn = self._connect(rows=True)
        try:
            cursor = conn.cursor()
            cursor.execute("SELECT id, name FROM categories ORDER BY name")
            return [Category(id=row["id"], name=row["name"]) for row in cursor.fetchall()]
        finally:
            conn.close()

    # =========================================================================
    # Payable Documents
    # =========================================================================

    def find_document_by_reference(self, reference_key: str) -> Optional[PayableDocument]:
        return self._find_document("reference_key = ?", (reference_key,))

    def find_document_by_number(
        self, document_number: str, issuer_tax_id: Optional[str] = None
    ) -> Optional[PayableDocument]:
        """Find a document by number, restricted to one issuer when ``issuer_tax_id`` is given."""
        if issuer_tax_id:
            return self._find_document(
                "document_number = ? AND vendor_id IN (SELECT id FROM vendors WHERE tax_id = ?)",
                (document_number, issuer_tax_id),
            )
        return self._find_document("document_number = ?", (document_number,))

    def find_document_by_description(self, fragment: str) -> Optional[PayableDocument]:
        """Find a document whose description contains ``fragment`` (case-insensitive)."""
        escaped = fragment.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        return self._find_document(
            "LOWER(description) LIKE LOWER(?) ESCAPE '\\'", (f"%{escaped}%",)
        )

    def get_document(self, document_id: int) -> Optional[PayableDocument]:
        return self._find_document("id = ?", (document_id,))

    def _find_document(self, where: str, params: tuple) -> Optional[PayableDocument]:
        conn = self._connect(rows=True)
        try:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT * FROM payable_documents WHERE {where} ORDER BY id LIMIT 1", params
            )
            row = cursor.fetchone()
            return _row_to_document(row) if row else None
        finally:
            conn.close()

    def insert_payable_document(self, document: PayableDocument) -> int:
        """Insert a payable document header and return its id.

        Raises:
            DuplicateReference: If the reference key is already in the ledger
        """
        conn = self._connect()
        try:
            cursor = conn.cursor()
            try:
                cursor.execute("""
                    INSERT INTO payable_documents
                    (reference_key, document_number, access_key, total_cents, vendor_id,
                     installment_count, description, reference, issue_date,
                     category_id, branch_id, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    document.reference_key,
                    document.document_number,
                    document.access_key,
                    document.total_cents,
                    document.vendor_id,
                    document.installment_count,
                    document.description,
                    document.reference,
                    document.issue_date.isoformat() if document.issue_date else None,
                    document.category_id,
                    document.branch_id,
                    datetime.utcnow().isoformat(),
                ))
            except sqlite3.IntegrityError as e:
                if "reference_key" in str(e):
                    raise DuplicateReference(document.reference_key) from e
                raise
            conn.commit()
            return cursor.lastrowid
        finally:
            conn.close()

    def count_documents(self) -> int:
        conn = self._connect()
        try:
            cursor = conn.cursor()
            cursor.execute("SELECT COUNT(*) FROM payable_documents")
            return cursor.fetchone()[0]
        finally:
            conn.close()

    # =========================================================================
    # Installments
    # =========================================================================

    def insert_installments(self, document_id: int, installments: List[Installment]) -> List[int]:
        """Insert all installments of a document in one transaction."""
        conn = self._connect()
        try:
            cursor = conn.cursor()
            ids = []
            for installment in installments:
                cursor.execute("""
                    INSERT INTO installments
                    (document_id, sequence_number, amount_cents, due_date, paid)
                    VALUES (?, ?, ?, ?, ?)
                """, (
                    document_id,
                    installment.sequence_number,
                    installment.amount_cents,
                    installment.due_date.isoformat(),
                    1 if installment.paid else 0,
                ))
                ids.append(cursor.lastrowid)
            conn.commit()
            return ids
        except sqlite3.Error:
            conn.rollback()
            raise
        finally:
            conn.close()

    def list_installments(self, document_id: int) -> List[InstallmentRecord]:
        conn = self._connect(rows=True)
        try:
            cursor = conn.cursor()
            cursor.execute("""
                SELECT * FROM installments WHERE document_id = ?
                ORDER BY sequence_number
            """, (document_id,))
            return [_row_to_installment(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def get_installment(self, installment_id: int) -> Optional[InstallmentRecord]:
        conn = self._connect(rows=True)
        try:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM installments WHERE id = ?", (installment_id,))
            row = cursor.fetchone()
            return _row_to_installment(row) if row else None
        finally:
            conn.close()

    def search_unpaid_installments(
        self,
        min_cents: int,
        max_cents: int,
        limit: int = 20,
    ) -> List[InstallmentRecord]:
        """Unpaid installments with amount in [min_cents, max_cents], earliest due first."""
        conn = self._connect(rows=True)
        try:
            cursor = conn.cursor()
            cursor.execute("""
                SELECT * FROM installments
                WHERE paid = 0 AND amount_cents >= ? AND amount_cents <= ?
                ORDER BY due_date ASC, id ASC
                LIMIT ?
            """, (min_cents, max_cents, limit))
            return [_row_to_installment(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def mark_installment_paid(self, installment_id: int, paid_at: date, paid_cents: int) -> bool:
        """Mark an unpaid installment as paid.

        Returns:
            True if updated, False if not found or already paid
        """
        conn = self._connect()
        try:
            cursor = conn.cursor()
            cursor.execute("""
                UPDATE installments SET paid = 1, paid_at = ?, paid_cents = ?
                WHERE id = ? AND paid = 0
            """, (paid_at.isoformat(), paid_cents, installment_id))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()


# =============================================================================
# Helper Functions
# =============================================================================

def _row_to_vendor(row: sqlite3.Row) -> Vendor:
    return Vendor(
        id=row["id"],
        tax_id=row["tax_id"],
        legal_name=row["legal_name"],
        trade_name=row["trade_name"],
        active=bool(row["active"]),
        created_at=datetime.fromisoformat(row["created_at"]) if row["created_at"] else None,
    )


def _row_to_document(row: sqlite3.Row) -> PayableDocument:
    return PayableDocument(
        id=row["id"],
        reference_key=row["reference_key"],
        document_number=row["document_number"],
        access_key=row["access_key"],
        total_cents=row["total_cents"],
        vendor_id=row["vendor_id"],
        installment_count=row["installment_count"],
        description=row["description"],
        reference=row["reference"],
        issue_date=row["issue_date"],
        category_id=row["category_id"],
        branch_id=row["branch_id"],
        created_at=datetime.fromisoformat(row["created_at"]) if row["created_at"] else None,
    )


def _row_to_installment(row: sqlite3.Row) -> InstallmentRecord:
    return InstallmentRecord(
        id=row["id"],
        document_id=row["document_id"],
        sequence_number=row["sequence_number"],
        amount_cents=row["amount_cents"],
        due_date=row["due_date"],
        paid=bool(row["paid"]),
        paid_at=row["paid_at"],
        paid_cents=row["paid_cents"],
    )
