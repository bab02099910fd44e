"""NF-e XML extractor tests."""

from datetime import date
from decimal import Decimal

import pytest

from conftest import ACCESS_KEY, build_nfe_xml
from core.errors import (
    InvalidAmount,
    MalformedDocument,
    MissingInvoiceStructure,
    MissingIssuerData,
    UnidentifiableDocument,
)
from extraction.nfe_xml import extract_nfe, is_nfe_candidate, number_from_access_key, number_from_filename


class TestExtractNfe:
    """Field extraction from well-formed documents."""

    def test_full_document(self):
        content = build_nfe_xml(dups=[
            ("001", "100.00", "2024-02-15"),
            ("002", "100.00", "2024-03-15"),
            ("003", "100.00", "2024-04-15"),
        ])
        doc = extract_nfe(content, "nfe.xml")

        assert doc.document_number == "1234"
        assert doc.access_key == ACCESS_KEY
        assert doc.issuer_tax_id == "12345678000190"
        assert doc.issuer_legal_name == "Papelaria Central LTDA"
        assert doc.issuer_trade_name == "Papelaria Central"
        assert doc.total_amount == Decimal("300.00")
        assert doc.total_cents == 30000
        assert doc.issue_date == date(2024, 1, 15)
        assert [i.sequence for i in doc.installments_raw] == [1, 2, 3]
        assert [i.label for i in doc.installments_raw] == ["001", "002", "003"]
        assert doc.installments_raw[0].due_date == date(2024, 2, 15)
        assert doc.reference_key == ACCESS_KEY

    def test_without_namespace_or_wrapper(self):
        doc = extract_nfe(build_nfe_xml(namespace=False, wrap=False))
        assert doc.document_number == "1234"
        assert doc.total_cents == 30000

    def test_utf8_bom_is_accepted(self):
        doc = extract_nfe(b"\xef\xbb\xbf" + build_nfe_xml())
        assert doc.document_number == "1234"

    def test_punctuated_cnpj_is_normalized(self):
        doc = extract_nfe(build_nfe_xml(cnpj="12.345.678/0001-90"))
        assert doc.issuer_tax_id == "12345678000190"

    def test_cpf_issuer(self):
        content = build_nfe_xml(cnpj=None).replace(
            b"<xNome>", b"<CPF>123.456.789-09</CPF><xNome>"
        )
        doc = extract_nfe(content)
        assert doc.issuer_tax_id == "12345678909"

    def test_legacy_issue_date(self):
        content = build_nfe_xml(issue_date=None).replace(
            b"<ide><nNF>1234</nNF>", b"<ide><nNF>1234</nNF><dEmi>2009-05-20</dEmi>"
        )
        assert extract_nfe(content).issue_date == date(2009, 5, 20)

    def test_missing_issue_date_defaults_to_today(self):
        assert extract_nfe(build_nfe_xml(issue_date=None)).issue_date == date.today()

    def test_unparsable_issue_date_defaults_to_today(self):
        assert extract_nfe(build_nfe_xml(issue_date="not-a-date")).issue_date == date.today()

    def test_no_duplicatas_gives_single_installment_of_total(self):
        doc = extract_nfe(build_nfe_xml(total="150.75"))
        assert len(doc.installments_raw) == 1
        assert doc.installments_raw[0].amount == Decimal("150.75")
        assert doc.installments_raw[0].due_date is None

    def test_non_positive_duplicatas_are_skipped(self):
        content = build_nfe_xml(dups=[
            ("001", "0.00", "2024-02-15"),
            ("002", "150.00", "2024-03-15"),
            ("003", "150.00", None),
        ])
        doc = extract_nfe(content)
        assert [i.sequence for i in doc.installments_raw] == [1, 2]
        assert [i.label for i in doc.installments_raw] == ["002", "003"]
        assert doc.installments_raw[1].due_date is None


class TestDocumentNumberFallbacks:
    """Number resolution when nNF is absent."""

    def test_number_from_access_key(self):
        doc = extract_nfe(build_nfe_xml(number=None))
        assert doc.document_number == "000001234"

    def test_number_from_filename(self):
        doc = extract_nfe(build_nfe_xml(number=None, access_key=None), "NFE_000045678_emitida.xml")
        assert doc.document_number == "000045678"
        assert doc.reference_key == "000045678"

    def test_access_key_from_protocol(self):
        content = build_nfe_xml(access_key=None).replace(
            b"</NFe>", f"</NFe><protNFe><infProt><chNFe>{ACCESS_KEY}</chNFe></infProt></protNFe>".encode()
        )
        assert extract_nfe(content).access_key == ACCESS_KEY

    def test_helpers(self):
        assert number_from_access_key(ACCESS_KEY) == "000001234"
        assert number_from_access_key("123") is None
        assert number_from_filename("nota_12345678.xml") == "12345678"
        assert number_from_filename("nota_1234567890.xml") is None
        assert number_from_filename(None) is None


class TestExtractionErrors:
    """Each failure surfaces as its own error kind."""

    def test_malformed(self):
        with pytest.raises(MalformedDocument):
            extract_nfe(b"<nfeProc><NFe>")

    def test_missing_structure(self):
        with pytest.raises(MissingInvoiceStructure):
            extract_nfe(b"<root><other/></root>")

    def test_unidentifiable(self):
        with pytest.raises(UnidentifiableDocument) as exc:
            extract_nfe(build_nfe_xml(number=None, access_key=None), "nota.xml")
        assert exc.value.kind == "UnidentifiableDocument"

    def test_missing_issuer_block(self):
        content = build_nfe_xml(cnpj=None, legal_name=None, trade_name=None).replace(b"<emit></emit>", b"")
        with pytest.raises(MissingIssuerData):
            extract_nfe(content)

    def test_missing_tax_id(self):
        with pytest.raises(MissingIssuerData):
            extract_nfe(build_nfe_xml(cnpj=None))

    def test_missing_legal_name(self):
        with pytest.raises(MissingIssuerData):
            extract_nfe(build_nfe_xml(legal_name=None))

    @pytest.mark.parametrize("total", [None, "0.00", "-10.00", "abc"])
    def test_invalid_total(self, total):
        with pytest.raises(InvalidAmount):
            extract_nfe(build_nfe_xml(total=total))


class TestCandidateDetection:

    def test_by_extension_or_content_type(self):
        assert is_nfe_candidate("NOTA.XML")
        assert is_nfe_candidate("upload", "text/xml")
        assert is_nfe_candidate("upload", "application/xml")
        assert not is_nfe_candidate("boleto.pdf", "application/pdf")
        assert not is_nfe_candidate(None)
