"""Completeness check for parsed invoices.

A document is complete when every required field has a value. Missing
field names are stored on the document so the dashboard can ask the
reviewer for exactly those fields.

Required fields are configured by their normalized-payload names
(``issueDate``, ``vendorName``, ...). The ``missing`` list uses the
names the dashboard's document model uses (``fechaEmision``,
``proveedor``, ...), see ``MISSING_FIELD_NAMES``.
"""

from dataclasses import dataclass, field

from invoice_intake.exceptions import ConfigInvalid
from invoice_intake.ocr.expense_parser import ParsedInvoice, TextValue
from invoice_intake.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_REQUIRED_FIELDS: list[str] = ["issueDate", "total", "vendorName"]

# Payload name -> ParsedInvoice attribute
FIELD_ATTRIBUTES: dict[str, str] = {
    "issueDate": "issue_date",
    "dueDate": "due_date",
    "total": "total",
    "subtotal": "subtotal",
    "tax": "tax",
    "vendorName": "vendor_name",
    "vendorTaxId": "vendor_tax_id",
    "invoiceNumber": "full_number",
    "letter": "letter",
}

# Payload name -> name stored in missing_fields for the dashboard
MISSING_FIELD_NAMES: dict[str, str] = {
    "issueDate": "fechaEmision",
    "dueDate": "fechaVencimiento",
    "total": "total",
    "subtotal": "subtotal",
    "tax": "iva",
    "vendorName": "proveedor",
    "vendorTaxId": "cuitProveedor",
    "invoiceNumber": "numeroCompleto",
    "letter": "letra",
}
@dataclass
class CompletenessReport:
    """Outcome of checking one document."""

    complete: bool
    missing: list[str] = field(default_factory=list)


class CompletenessChecker:
    """Reports which required fields a parsed invoice lacks.

    Args:
        required_fields: Payload names of the required fields.

    Raises:
        ConfigInvalid: If a required field name is unknown.
    """

    def __init__(self, required_fields: list[str] | None = None) -> None:
        self.required_fields = list(required_fields or DEFAULT_REQUIRED_FIELDS)
        unknown = [name for name in self.required_fields if name not in FIELD_ATTRIBUTES]
        if unknown:
            raise ConfigInvalid(f"Unknown required fields: {', '.join(unknown)}")

    def check(self, invoice: ParsedInvoice, extra_missing: list[str] | None = None) -> CompletenessReport:
        """Check required fields in their configured order.

        Args:
            invoice: Parsed invoice.
            extra_missing: Payload names of fields known to be missing for
                other reasons, e.g. values discarded after parsing.
                Appended once each.

        Returns:
            Report listing the missing fields by their dashboard names.
        """
        missing = [
            MISSING_FIELD_NAMES[name]
            for name in self.required_fields
            if _is_empty(getattr(invoice, FIELD_ATTRIBUTES[name]))
        ]
        for name in extra_missing or []:
            dashboard_name = MISSING_FIELD_NAMES.get(name, name)
            if dashboard_name not in missing:
                missing.append(dashboard_name)
        if missing:
            logger.info("Document incomplete, missing: %s", ", ".join(missing))
        return CompletenessReport(complete=not missing, missing=missing)


def _is_empty(value: object) -> bool:
    if value is None:
        return True
    if isinstance(value, TextValue):
        return not value.value.strip()
    if isinstance(value, str):
        return not value.strip()
    return False
