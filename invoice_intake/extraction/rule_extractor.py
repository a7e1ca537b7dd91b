"""Rule-based field extraction using regex patterns.

Fallback extractors for Argentine invoice conventions that the expense
analysis service does not model: the invoice letter (A, B, C, E, M),
the vendor CUIT, the ``PPPP-NNNNNNNN`` invoice number, the document type
and the currency.
"""

import re
from dataclasses import dataclass

from invoice_intake.db.models import DocumentType
from invoice_intake.utils.logger import get_logger

logger = get_logger(__name__)

# The vendor block is printed in the header, above the buyer's data.
HEADER_LINES = 15

INVOICE_LETTERS = "ABCEM"


@dataclass
class ExtractedField:
    """A field value extracted by a regex rule."""

    field_name: str
    value: str
    confidence: float
    line_number: int
    extraction_method: str


# Pattern definitions: (regex, base_confidence, optional_flags)
_LETTER_PATTERNS: list[tuple[str, float, int]] = [
    (
        rf"(?:FACTURA|NOTA\s+DE\s+CR[EÉ]DITO|NOTA\s+DE\s+D[EÉ]BITO)\s+([{INVOICE_LETTERS}])\b",
        0.9,
        re.IGNORECASE,
    ),
    (rf"^\s*([{INVOICE_LETTERS}])\s*$", 0.6, 0),
]

_FULL_NUMBER_PATTERNS: list[tuple[str, float, int]] = [
    (r"\b([A-Z]?\d{4,5})\s*[-\s]\s*(\d{8})\b", 0.85, 0),
]

_POINT_OF_SALE_PATTERNS: list[tuple[str, float, int]] = [
    (r"(?:Pto\.?\s*(?:de\s*)?Vta\.?|Punto\s+de\s+Venta)[:.\s]*(\d{4,5})", 0.8, re.IGNORECASE),
]

_NUMBER_PATTERNS: list[tuple[str, float, int]] = [
    (r"(?:Comp\.?\s*Nro|N[°º]|Nro\.?|N[uú]mero)[:.\s]*(\d{8})\b", 0.8, re.IGNORECASE),
]

_TAX_ID_LABEL_RE = re.compile(r"C\.?\s?U\.?\s?I\.?\s?T\.?", re.IGNORECASE)
_BUYER_RE = re.compile(r"cliente|comprador|se[ñn]or(?:es)?", re.IGNORECASE)
_TAX_ID_LOOSE_RE = re.compile(r"\b(\d{2})[-\s]?(\d{8})[-\s]?(\d)\b")
_TAX_ID_DASHED_RE = re.compile(r"\b(\d{2})-(\d{8})-(\d)\b")

_CREDIT_NOTE_RE = re.compile(r"NOTA\s+(?:DE\s+)?CR[EÉ]DITO", re.IGNORECASE)
_DELIVERY_NOTE_RE = re.compile(r"\bREMITO\b", re.IGNORECASE)
_USD_RE = re.compile(r"\bUSD\b|U\$S|D[OÓ]LAR", re.IGNORECASE)
_EUR_RE = re.compile(r"\bEUR\b|\bEUROS?\b|€", re.IGNORECASE)


def normalize_tax_id(value: str | None) -> str:
    """Digits of a CUIT, e.g. ``30-71215244-9`` -> ``30712152449``."""
    return re.sub(r"\D", "", value or "")


class RuleExtractor:
    """Regex-based fallback extractor over the recognised text lines."""

    def extract_letter(self, lines: list[str]) -> ExtractedField | None:
        """Find the invoice letter printed next to the document title.

        A bare single-letter line only counts inside the header block,
        where the letter box sits.
        """
        for pattern, confidence, flags in _LETTER_PATTERNS:
            regex = re.compile(pattern, flags)
            header_only = regex.pattern.startswith("^")
            scope = lines[:HEADER_LINES] if header_only else lines
            for line_number, line in enumerate(scope):
                match = regex.search(line)
                if match:
                    return ExtractedField(
                        field_name="letter",
                        value=match.group(1).upper(),
                        confidence=confidence,
                        line_number=line_number,
                        extraction_method="regex",
                    )
        return None

    def extract_tax_id(self, lines: list[str]) -> ExtractedField | None:
        """Find the vendor CUIT in the header block.

        Lines labelled CUIT take precedence, skipping lines that belong
        to the buyer; otherwise the first dashed CUIT-shaped token in the
        header is used.

        Returns:
            The CUIT as 11 digits, or ``None``.
        """
        header = lines[:HEADER_LINES]
        for line_number, line in enumerate(header):
            if not _TAX_ID_LABEL_RE.search(line) or _BUYER_RE.search(line):
                continue
            match = _TAX_ID_LOOSE_RE.search(line) or re.search(r"\b(\d{11})\b", line)
            if match:
                return self._tax_id_field("".join(match.groups()), 0.85, line_number)

        for line_number, line in enumerate(header):
            if _BUYER_RE.search(line):
                continue
            match = _TAX_ID_DASHED_RE.search(line)
            if match:
                return self._tax_id_field("".join(match.groups()), 0.6, line_number)
        return None

    def extract_full_number(self, text: str) -> tuple[str, str] | None:
        """Split a ``PPPP-NNNNNNNN`` style number into point of sale and number.

        Args:
            text: A line, or a value reported by the OCR service.

        Returns:
            ``(point_of_sale, number)`` or ``None``.
        """
        for pattern, _, flags in _FULL_NUMBER_PATTERNS:
            match = re.search(pattern, text, flags)
            if match:
                return match.group(1), match.group(2)
        return None

    def extract_number_parts(self, lines: list[str]) -> tuple[str, str] | None:
        """Find point of sale and number, together or on separate labels."""
        for line in lines:
            parts = self.extract_full_number(line)
            if parts:
                return parts

        point_of_sale = self._first_group(_POINT_OF_SALE_PATTERNS, lines)
        number = self._first_group(_NUMBER_PATTERNS, lines)
        if point_of_sale and number:
            return point_of_sale.zfill(4), number
        return None

    def detect_document_type(self, text: str) -> DocumentType:
        if _CREDIT_NOTE_RE.search(text):
            return DocumentType.NOTA_CREDITO
        if _DELIVERY_NOTE_RE.search(text) and "FACTURA" not in text.upper():
            return DocumentType.REMITO
        return DocumentType.FACTURA

    def detect_currency(self, text: str, default: str = "ARS") -> str:
        if _USD_RE.search(text):
            return "USD"
        if _EUR_RE.search(text):
            return "EUR"
        return default

    @staticmethod
    def _first_group(
        patterns: list[tuple[str, float, int]], lines: list[str]
    ) -> str | None:
        for pattern, _, flags in patterns:
            regex = re.compile(pattern, flags)
            for line in lines:
                match = regex.search(line)
                if match:
                    return match.group(1)
        return None

    @staticmethod
    def _tax_id_field(value: str, confidence: float, line_number: int) -> ExtractedField:
        logger.debug("Found vendor tax id on line %d", line_number)
        return ExtractedField(
            field_name="vendor_tax_id",
            value=value,
            confidence=confidence,
            line_number=line_number,
            extraction_method="regex",
        )
