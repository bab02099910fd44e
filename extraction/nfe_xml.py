"""NF-e XML field extractor.

Turns the bytes of a Brazilian electronic invoice (NF-e, modelo 55) into a
``FiscalDocument``. Producers disagree on wrapping (``nfeProc`` vs bare
``NFe``) and on namespaces, so every field is read through an ordered list
of lookups over a namespace-free tree and the first non-empty value wins.

Structure consumed:
    <nfeProc>
        <NFe>
            <infNFe Id="NFe{44 digits}">
                <ide>    nNF, dhEmi / dEmi
                <emit>   CNPJ / CPF, xNome, xFant
                <total>  ICMSTot/vNF
                <cobr>   dup* (nDup, dVenc, vDup)
            </infNFe>
        </NFe>
        <protNFe><infProt><chNFe/></infProt></protNFe>
    </nfeProc>
"""

import re
import xml.etree.ElementTree as ET
from datetime import date
from typing import Callable, List, Optional, Tuple

from core.errors import (
    InvalidAmount,
    MalformedDocument,
    MissingInvoiceStructure,
    MissingIssuerData,
    UnidentifiableDocument,
)
from core.models import FiscalDocument, RawInstallment, only_digits, parse_date, parse_decimal
from core.observability.logging import get_logger

logger = get_logger(__name__)

# Positions 26-34 of the 44-digit access key hold nNF
ACCESS_KEY_NUMBER_OFFSET = 25
ACCESS_KEY_NUMBER_LENGTH = 9

FILENAME_NUMBER_PATTERN = re.compile(r"(?<!\d)(\d{8,9})(?!\d)")

PathLookup = Callable[[ET.Element, ET.Element], Optional[str]]


# =============================================================================
# Tree Helpers
# =============================================================================

def parse_xml(content: bytes) -> ET.Element:
    """Parse XML bytes and strip namespaces from every tag.

    Raises:
        MalformedDocument: If the content is not well-formed XML
    """
    if content.startswith(b"\xef\xbb\xbf"):
        content = content[3:]
    try:
        root = ET.fromstring(content)
    except ET.ParseError as e:
        raise MalformedDocument(f"File is not well-formed XML: {e}") from e

    for element in root.iter():
        if isinstance(element.tag, str) and "}" in element.tag:
            element.tag = element.tag.split("}", 1)[1]
    return root


def _text(element: Optional[ET.Element], path: str) -> Optional[str]:
    """Stripped text at ``path`` below ``element``, or None when empty."""
    if element is None:
        return None
    found = element.find(path)
    if found is None or found.text is None:
        return None
    value = found.text.strip()
    return value or None


def _from_document_root(path: str) -> PathLookup:
    """Lookup for a fully qualified path starting at the document element."""
    head, _, rest = path.partition("/")

    def lookup(root: ET.Element, inf_nfe: ET.Element) -> Optional[str]:
        if root.tag != head:
            return None
        return _text(root, rest)

    return lookup


# =============================================================================
# Field Lookups (ordered; first non-empty wins)
# =============================================================================

DOCUMENT_NUMBER_LOOKUPS: List[Tuple[str, PathLookup]] = [
    ("infNFe/ide/nNF", lambda root, inf: _text(inf, "ide/nNF")),
    (".//ide/nNF", lambda root, inf: _text(root, ".//ide/nNF")),
    (".//nNF", lambda root, inf: _text(root, ".//nNF")),
    ("NFe/infNFe/ide/nNF", _from_document_root("NFe/infNFe/ide/nNF")),
    ("nfeProc/NFe/infNFe/ide/nNF", _from_document_root("nfeProc/NFe/infNFe/ide/nNF")),
]

ISSUE_DATE_LOOKUPS: List[Tuple[str, PathLookup]] = [
    ("ide/dhEmi", lambda root, inf: _text(inf, "ide/dhEmi")),
    ("ide/dEmi", lambda root, inf: _text(inf, "ide/dEmi")),
]

TOTAL_LOOKUPS: List[Tuple[str, PathLookup]] = [
    ("total/ICMSTot/vNF", lambda root, inf: _text(inf, "total/ICMSTot/vNF")),
    (".//vNF", lambda root, inf: _text(root, ".//vNF")),
]


def first_match(
    lookups: List[Tuple[str, PathLookup]],
    root: ET.Element,
    inf_nfe: ET.Element,
) -> Tuple[Optional[str], Optional[str]]:
    """Run lookups in order and return (value, matching path name)."""
    for name, lookup in lookups:
        value = lookup(root, inf_nfe)
        if value:
            return value, name
    return None, None


def find_invoice_info(root: ET.Element) -> ET.Element:
    """Locate infNFe, falling back to the NFe element.

    Raises:
        MissingInvoiceStructure: If neither element exists
    """
    if root.tag == "infNFe":
        return root
    inf_nfe = root.find(".//infNFe")
    if inf_nfe is not None:
        return inf_nfe
    if root.tag == "NFe":
        return root
    nfe = root.find(".//NFe")
    if nfe is not None:
        return nfe
    raise MissingInvoiceStructure("XML does not contain an infNFe element")


def extract_access_key(root: ET.Element, inf_nfe: ET.Element) -> Optional[str]:
    """Access key from the infNFe Id attribute, else the protocol's chNFe."""
    key = (inf_nfe.get("Id") or "").strip()
    if key.startswith("NFe"):
        key = key[3:]
    if key:
        return key
    return _text(root, ".//chNFe")


def number_from_access_key(access_key: Optional[str]) -> Optional[str]:
    end = ACCESS_KEY_NUMBER_OFFSET + ACCESS_KEY_NUMBER_LENGTH
    if not access_key or len(access_key) < end:
        return None
    return access_key[ACCESS_KEY_NUMBER_OFFSET:end]


def number_from_filename(filename: Optional[str]) -> Optional[str]:
    if not filename:
        return None
    match = FILENAME_NUMBER_PATTERN.search(filename)
    return match.group(1) if match else None


def extract_installments(root: ET.Element, inf_nfe: ET.Element) -> List[RawInstallment]:
    """Read cobr/dup entries, skipping ones without a positive amount.

    Sequences are renumbered 1..n in document order; nDup is kept as label.
    """
    dups = inf_nfe.findall("cobr/dup") or root.findall(".//cobr/dup")

    installments: List[RawInstallment] = []
    for dup in dups:
        label = _text(dup, "nDup")
        try:
            amount = parse_decimal(_text(dup, "vDup"))
        except ValueError:
            amount = None
        if amount is None or not amount.is_finite() or amount <= 0:
            logger.debug("Skipping installment %s without a positive amount", label)
            continue

        try:
            due_date = parse_date(_text(dup, "dVenc"))
        except ValueError:
            logger.warning("Ignoring unparsable due date on installment %s", label)
            due_date = None

        installments.append(RawInstallment(
            sequence=len(installments) + 1,
            amount=amount,
            due_date=due_date,
            label=label,
        ))
    return installments


# =============================================================================
# Extractor
# =============================================================================

def extract_nfe(content: bytes, filename: Optional[str] = None) -> FiscalDocument:
    """Extract a FiscalDocument from NF-e XML bytes.

    Args:
        content: Raw file bytes
        filename: Original upload name, used as last-resort number source

    Returns:
        FiscalDocument with at least one raw installment

    Raises:
        MalformedDocument, MissingInvoiceStructure, UnidentifiableDocument,
        MissingIssuerData, InvalidAmount
    """
    root = parse_xml(content)
    inf_nfe = find_invoice_info(root)

    access_key = extract_access_key(root, inf_nfe)

    document_number, matched = first_match(DOCUMENT_NUMBER_LOOKUPS, root, inf_nfe)
    if document_number:
        logger.debug("Document number found at %s", matched)
    else:
        document_number = number_from_access_key(access_key)
        if document_number:
            logger.debug("Document number derived from access key")
        else:
            document_number = number_from_filename(filename)
            if document_number:
                logger.debug("Document number taken from filename %s", filename)

    if not document_number and not access_key:
        raise UnidentifiableDocument(
            f"Could not determine document number or access key for {filename or 'document'}"
        )

    emit = inf_nfe.find("emit")
    if emit is None:
        emit = root.find(".//emit")
    if emit is None:
        raise MissingIssuerData("Issuer (emit) block not found")
    tax_id = only_digits(_text(emit, "CNPJ") or _text(emit, "CPF"))
    legal_name = _text(emit, "xNome")
    if not tax_id:
        raise MissingIssuerData("Issuer tax ID (CNPJ/CPF) not found")
    if not legal_name:
        raise MissingIssuerData("Issuer legal name (xNome) not found")

    raw_total, _ = first_match(TOTAL_LOOKUPS, root, inf_nfe)
    try:
        total = parse_decimal(raw_total)
    except ValueError:
        total = None
    if total is None or not total.is_finite() or total <= 0:
        raise InvalidAmount(f"Invalid total amount: {raw_total!r}")

    raw_date, _ = first_match(ISSUE_DATE_LOOKUPS, root, inf_nfe)
    try:
        issue_date = parse_date(raw_date) or date.today()
    except ValueError:
        logger.warning("Unparsable issue date %r, using today", raw_date)
        issue_date = date.today()

    installments = extract_installments(root, inf_nfe)
    if not installments:
        installments = [RawInstallment(sequence=1, amount=total, due_date=None)]

    document = FiscalDocument(
        document_number=document_number,
        access_key=access_key,
        issuer_tax_id=tax_id,
        issuer_legal_name=legal_name,
        issuer_trade_name=_text(emit, "xFant"),
        total_amount=total,
        issue_date=issue_date,
        installments_raw=installments,
        source_filename=filename,
    )

    logger.info(
        "Extracted NF-e %s",
        document.reference_key,
        extra_fields={
            "document_number": document_number,
            "total": str(total),
            "installments": len(installments),
        },
    )
    return document


def is_nfe_candidate(filename: Optional[str], content_type: Optional[str] = None) -> bool:
    """True when an upload should go through the XML extractor."""
    if content_type and "xml" in content_type.lower():
        return True
    return bool(filename) and filename.lower().endswith(".xml")