"""Tests for amount/date parsing and rule-based field extraction."""

from datetime import date
from decimal import Decimal

import pytest

from invoice_intake.db.models import DocumentType
from invoice_intake.extraction.rule_extractor import (
    HEADER_LINES,
    RuleExtractor,
    normalize_tax_id,
)
from invoice_intake.extraction.values import parse_amount, parse_date


class TestParseAmount:
    """Tests for locale-aware amount parsing."""

    @pytest.mark.parametrize(
        "text, expected",
        [
            ("$ 1.234,56", Decimal("1234.56")),
            ("USD 1,234.56", Decimal("1234.56")),
            ("$ 1.000", Decimal("1000.00")),
            ("1.234.567", Decimal("1234567.00")),
            ("12,5", Decimal("12.50")),
            ("121.00", Decimal("121.00")),
            ("100.", Decimal("100.00")),
            ("-42.10", Decimal("-42.10")),
            ("(150,00)", Decimal("-150.00")),
        ],
    )
    def test_formats(self, text: str, expected: Decimal) -> None:
        assert parse_amount(text) == expected

    @pytest.mark.parametrize("text", [None, "", "abc", "$"])
    def test_no_number(self, text) -> None:
        assert parse_amount(text) is None

    def test_result_has_two_decimals(self) -> None:
        assert parse_amount("7").as_tuple().exponent == -2


class TestParseDate:
    """Tests for printed date parsing."""

    @pytest.mark.parametrize(
        "text, expected",
        [
            ("2026-01-01", date(2026, 1, 1)),
            ("2026-01-01T00:00:00", date(2026, 1, 1)),
            ("26/12/2025", date(2025, 12, 26)),
            ("Fecha: 26-12-25", date(2025, 12, 26)),
            ("01.02.2026", date(2026, 2, 1)),
            ("26 de diciembre de 2025", date(2025, 12, 26)),
            ("15-Mar-2026", date(2026, 3, 15)),
            ("March 5, 2026", date(2026, 3, 5)),
        ],
    )
    def test_formats(self, text: str, expected: date) -> None:
        assert parse_date(text) == expected

    @pytest.mark.parametrize("text", [None, "", "no date here", "31/02/2026"])
    def test_invalid(self, text) -> None:
        assert parse_date(text) is None


class TestRuleExtractor:
    """Tests for the regex fallback extractor."""

    def setup_method(self) -> None:
        self.extractor = RuleExtractor()

    def test_letter_next_to_title(self) -> None:
        field = self.extractor.extract_letter(["ACME SA", "FACTURA B", "ORIGINAL"])
        assert field.value == "B"
        assert field.confidence == 0.9
        assert field.line_number == 1

    def test_letter_in_box(self) -> None:
        field = self.extractor.extract_letter(["ACME SA", "A", "ORIGINAL"])
        assert field.value == "A"
        assert field.confidence == 0.6

    def test_letter_box_outside_header_ignored(self) -> None:
        lines = ["line"] * (HEADER_LINES + 1) + ["C"]
        assert self.extractor.extract_letter(lines) is None

    def test_tax_id_labelled(self) -> None:
        field = self.extractor.extract_tax_id(
            ["ACME SA", "CUIT: 30-71215244-9", "Cliente CUIT: 20-12345678-6"]
        )
        assert field.value == "30712152449"
        assert field.confidence == 0.85

    def test_tax_id_skips_buyer_line(self) -> None:
        field = self.extractor.extract_tax_id(
            ["Señores: Foo SRL CUIT 20-12345678-6", "C.U.I.T. 30712152449"]
        )
        assert field.value == "30712152449"

    def test_tax_id_unlabelled(self) -> None:
        field = self.extractor.extract_tax_id(["ACME SA", "30-71215244-9 IVA RESP INSC"])
        assert field.value == "30712152449"
        assert field.confidence == 0.6

    def test_tax_id_missing(self) -> None:
        assert self.extractor.extract_tax_id(["ACME SA", "Total 121,00"]) is None

    def test_full_number(self) -> None:
        assert self.extractor.extract_full_number("Nro 0001-00001234") == ("0001", "00001234")
        assert self.extractor.extract_full_number("Total 121,00") is None

    def test_number_parts_from_labels(self) -> None:
        parts = self.extractor.extract_number_parts(
            ["Punto de Venta: 0003", "Comp. Nro: 00000042"]
        )
        assert parts == ("0003", "00000042")

    def test_number_parts_missing(self) -> None:
        assert self.extractor.extract_number_parts(["Punto de Venta: 0003"]) is None

    @pytest.mark.parametrize(
        "text, expected",
        [
            ("NOTA DE CREDITO B", DocumentType.NOTA_CREDITO),
            ("REMITO R 0001-00000001", DocumentType.REMITO),
            ("FACTURA A\nSegún remito 12", DocumentType.FACTURA),
            ("ACME SA", DocumentType.FACTURA),
        ],
    )
    def test_document_type(self, text: str, expected: DocumentType) -> None:
        assert self.extractor.detect_document_type(text) == expected

    @pytest.mark.parametrize(
        "text, expected",
        [
            ("Total USD 100", "USD"),
            ("Importe U$S 100", "USD"),
            ("Total € 50", "EUR"),
            ("Total $ 100", "ARS"),
        ],
    )
    def test_currency(self, text: str, expected: str) -> None:
        assert self.extractor.detect_currency(text) == expected

    def test_normalize_tax_id(self) -> None:
        assert normalize_tax_id("30-71215244-9") == "30712152449"
        assert normalize_tax_id(None) == ""
