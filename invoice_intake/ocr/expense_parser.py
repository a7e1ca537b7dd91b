"""Parse a Textract ``AnalyzeExpense`` response into a typed invoice.

Each field is either absent (``None``) or one of :class:`TextValue`,
:class:`AmountValue` or :class:`DateValue`, carrying the service's
confidence for that field. Structured summary fields come first; regex
fallbacks over the recognised text fill in what the service does not
model for Argentine invoices.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Union

from invoice_intake.db.models import DocumentType
from invoice_intake.extraction.rule_extractor import RuleExtractor, normalize_tax_id
from invoice_intake.extraction.values import parse_amount, parse_date
from invoice_intake.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class TextValue:
    value: str
    confidence: float


@dataclass(frozen=True)
class AmountValue:
    value: Decimal
    confidence: float


@dataclass(frozen=True)
class DateValue:
    value: date
    confidence: float


FieldValue = Union[TextValue, AmountValue, DateValue]


@dataclass
class LineItem:
    """One row of the invoice's item table."""

    description: str | None = None
    quantity: Decimal | None = None
    unit_price: Decimal | None = None
    amount: Decimal | None = None


@dataclass
class ParsedInvoice:
    """Normalized fields of one analysed document.

    Attributes:
        confidence_score: Mean confidence (0-100) of the summary fields
            the service returned, 0 when it returned none.
        lines: Recognised text lines, in reading order.
    """

    vendor_name: TextValue | None = None
    vendor_tax_id: TextValue | None = None
    invoice_number: TextValue | None = None
    letter: TextValue | None = None
    point_of_sale: str | None = None
    number: str | None = None
    issue_date: DateValue | None = None
    due_date: DateValue | None = None
    subtotal: AmountValue | None = None
    tax: AmountValue | None = None
    total: AmountValue | None = None
    currency: str = "ARS"
    document_type: DocumentType = DocumentType.FACTURA
    line_items: list[LineItem] = field(default_factory=list)
    confidence_score: int = 0
    lines: list[str] = field(default_factory=list)

    @property
    def full_number(self) -> str | None:
        if self.point_of_sale and self.number:
            return f"{self.point_of_sale}-{self.number}"
        return self.invoice_number.value if self.invoice_number else None

    def discard_tenant_tax_id(self, tenant_tax_id: str) -> list[str]:
        """Drop values that are really the buyer's own CUIT.

        The service sometimes reads the buyer's CUIT as the vendor tax id
        or even as the invoice number.

        Returns:
            Payload names of the fields that were cleared.
        """
        own = normalize_tax_id(tenant_tax_id)
        if not own:
            return []
        cleared: list[str] = []
        if self.vendor_tax_id and normalize_tax_id(self.vendor_tax_id.value) == own:
            self.vendor_tax_id = None
            cleared.append("vendorTaxId")
        if self.full_number and normalize_tax_id(self.full_number) == own:
            self.invoice_number = None
            self.point_of_sale = None
            self.number = None
            cleared.append("invoiceNumber")
        if cleared:
            logger.warning("Cleared fields matching the tenant's own tax id: %s", cleared)
        return cleared

    def to_payload(self) -> dict[str, Any]:
        """JSON-serialisable view stored as the document's normalized payload."""

        def plain(value: FieldValue | None) -> dict[str, Any] | None:
            if value is None:
                return None
            raw = value.value
            if isinstance(raw, Decimal):
                raw = str(raw)
            elif isinstance(raw, date):
                raw = raw.isoformat()
            return {"value": raw, "confidence": round(value.confidence, 2)}

        return {
            "vendorName": plain(self.vendor_name),
            "vendorTaxId": plain(self.vendor_tax_id),
            "invoiceNumber": plain(self.invoice_number),
            "fullNumber": self.full_number,
            "letter": plain(self.letter),
            "pointOfSale": self.point_of_sale,
            "number": self.number,
            "issueDate": plain(self.issue_date),
            "dueDate": plain(self.due_date),
            "subtotal": plain(self.subtotal),
            "tax": plain(self.tax),
            "total": plain(self.total),
            "currency": self.currency,
            "documentType": self.document_type.value,
            "lineItems": [
                {
                    "description": item.description,
                    "quantity": None if item.quantity is None else str(item.quantity),
                    "unitPrice": None if item.unit_price is None else str(item.unit_price),
                    "amount": None if item.amount is None else str(item.amount),
                }
                for item in self.line_items
            ],
            "confidenceScore": self.confidence_score,
        }


# Summary field type -> ParsedInvoice attribute
_TEXT_FIELDS = {
    "VENDOR_NAME": "vendor_name",
    "INVOICE_RECEIPT_ID": "invoice_number",
}
_DATE_FIELDS = {
    "INVOICE_RECEIPT_DATE": "issue_date",
    "DUE_DATE": "due_date",
}
_AMOUNT_FIELDS = {
    "SUBTOTAL": "subtotal",
    "TAX": "tax",
    "TOTAL": "total",
}
_AMOUNT_FALLBACKS = {"AMOUNT_DUE": "total"}


class ExpenseParser:
    """Turns ``AnalyzeExpense`` responses into :class:`ParsedInvoice`.

    Args:
        default_currency: Currency used when none is printed.
        rule_extractor: Regex fallbacks; a default one is created if omitted.
    """

    def __init__(
        self, default_currency: str = "ARS", rule_extractor: RuleExtractor | None = None
    ) -> None:
        self.default_currency = default_currency
        self.rules = rule_extractor or RuleExtractor()

    def parse(self, response: dict[str, Any]) -> ParsedInvoice:
        """Parse the first expense document of a response.

        Args:
            response: ``AnalyzeExpense`` response body.

        Returns:
            Parsed invoice; fields the service and the fallbacks could not
            find are ``None``.
        """
        documents = response.get("ExpenseDocuments") or []
        if len(documents) > 1:
            logger.warning(
                "Response holds %d expense documents, using the first", len(documents)
            )
        document = documents[0] if documents else {}
        summary = document.get("SummaryFields") or []

        invoice = ParsedInvoice(currency=self.default_currency)
        confidences: list[float] = []
        currency_code: str | None = None

        for expense_field in summary:
            field_type = _field_type(expense_field)
            text = _value_text(expense_field)
            if not text:
                continue
            confidence = _confidence(expense_field)

            if field_type in _TEXT_FIELDS or (
                field_type == "NAME" and "VENDOR" in _group_types(expense_field)
            ):
                attr = _TEXT_FIELDS.get(field_type, "vendor_name")
                if getattr(invoice, attr) is None:
                    setattr(invoice, attr, TextValue(text.strip(), confidence))
                    confidences.append(confidence)
            elif field_type in _DATE_FIELDS:
                attr = _DATE_FIELDS[field_type]
                parsed = parse_date(_normalized_value(expense_field) or text)
                if parsed and getattr(invoice, attr) is None:
                    setattr(invoice, attr, DateValue(parsed, confidence))
                    confidences.append(confidence)
            elif field_type in _AMOUNT_FIELDS:
                attr = _AMOUNT_FIELDS[field_type]
                amount = parse_amount(text)
                if amount is not None and getattr(invoice, attr) is None:
                    setattr(invoice, attr, AmountValue(amount, confidence))
                    confidences.append(confidence)
                    if field_type == "TOTAL":
                        currency_code = _currency_code(expense_field) or currency_code
            elif field_type == "TAX_PAYER_ID":
                if "RECEIVER" in _group_types(expense_field):
                    continue
                if invoice.vendor_tax_id is None:
                    invoice.vendor_tax_id = TextValue(normalize_tax_id(text) or text, confidence)
                    confidences.append(confidence)

        for expense_field in summary:
            attr = _AMOUNT_FALLBACKS.get(_field_type(expense_field))
            if attr and getattr(invoice, attr) is None:
                amount = parse_amount(_value_text(expense_field))
                if amount is not None:
                    confidence = _confidence(expense_field)
                    setattr(invoice, attr, AmountValue(amount, confidence))
                    confidences.append(confidence)
                    currency_code = _currency_code(expense_field) or currency_code

        invoice.lines = _lines(document, summary)
        invoice.line_items = _line_items(document)
        self._apply_fallbacks(invoice, currency_code)

        if confidences:
            invoice.confidence_score = int(round(sum(confidences) / len(confidences)))
        logger.info(
            "Parsed %d summary fields (confidence %d)", len(confidences), invoice.confidence_score
        )
        return invoice

    def _apply_fallbacks(self, invoice: ParsedInvoice, currency_code: str | None) -> None:
        lines = invoice.lines
        text = "\n".join(lines)

        letter = self.rules.extract_letter(lines)
        if letter:
            invoice.letter = TextValue(letter.value, letter.confidence * 100)

        if invoice.vendor_tax_id is None:
            tax_id = self.rules.extract_tax_id(lines)
            if tax_id:
                invoice.vendor_tax_id = TextValue(tax_id.value, tax_id.confidence * 100)

        parts = None
        if invoice.invoice_number:
            parts = self.rules.extract_full_number(invoice.invoice_number.value)
        if parts is None:
            parts = self.rules.extract_number_parts(lines)
        if parts:
            invoice.point_of_sale, invoice.number = parts

        invoice.document_type = self.rules.detect_document_type(text)
        invoice.currency = (currency_code or self.rules.detect_currency(text, self.default_currency)).upper()


def _field_type(expense_field: dict[str, Any]) -> str:
    return (expense_field.get("Type") or {}).get("Text", "")


def _value_text(expense_field: dict[str, Any]) -> str:
    return ((expense_field.get("ValueDetection") or {}).get("Text") or "").strip()


def _normalized_value(expense_field: dict[str, Any]) -> str | None:
    normalized = (expense_field.get("ValueDetection") or {}).get("NormalizedValue") or {}
    return normalized.get("Value")


def _confidence(expense_field: dict[str, Any]) -> float:
    value = expense_field.get("ValueDetection") or {}
    if "Confidence" in value:
        return float(value["Confidence"])
    return float((expense_field.get("Type") or {}).get("Confidence", 0.0))


def _group_types(expense_field: dict[str, Any]) -> set[str]:
    types: set[str] = set()
    for group in expense_field.get("GroupProperties") or []:
        types.update(group.get("Types") or [])
    return types


def _currency_code(expense_field: dict[str, Any]) -> str | None:
    return (expense_field.get("Currency") or {}).get("Code")


def _lines(document: dict[str, Any], summary: list[dict[str, Any]]) -> list[str]:
    """Recognised LINE blocks, or the summary texts when no blocks came back."""
    lines = [
        block.get("Text", "").strip()
        for block in document.get("Blocks") or []
        if block.get("BlockType") == "LINE" and block.get("Text", "").strip()
    ]
    if lines:
        return lines
    for expense_field in summary:
        label = ((expense_field.get("LabelDetection") or {}).get("Text") or "").strip()
        value = _value_text(expense_field)
        line = f"{label} {value}".strip()
        if line:
            lines.append(line)
    return lines


def _line_items(document: dict[str, Any]) -> list[LineItem]:
    items: list[LineItem] = []
    for group in document.get("LineItemGroups") or []:
        for line_item in group.get("LineItems") or []:
            item = LineItem()
            for expense_field in line_item.get("LineItemExpenseFields") or []:
                field_type = _field_type(expense_field)
                text = _value_text(expense_field)
                if field_type == "ITEM":
                    item.description = text or None
                elif field_type == "QUANTITY":
                    item.quantity = parse_amount(text)
                elif field_type == "UNIT_PRICE":
                    item.unit_price = parse_amount(text)
                elif field_type == "PRICE":
                    item.amount = parse_amount(text)
            if item.description or item.amount is not None:
                items.append(item)
    return items
