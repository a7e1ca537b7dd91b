"""Tests for the Textract expense client."""

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from invoice_intake.exceptions import OcrServiceError, UnsupportedDocument
from invoice_intake.ocr.textract_client import PERMANENT_ERROR_CODES, TextractExpenseClient


def _client_error(code: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": "rejected"}}, "AnalyzeExpense")


class TestTextractExpenseClient:
    """Tests for TextractExpenseClient.analyze."""

    def setup_method(self) -> None:
        self.boto = MagicMock()
        self.client = TextractExpenseClient(client=self.boto)

    def test_sends_bytes_and_strips_metadata(self) -> None:
        self.boto.analyze_expense.return_value = {
            "ExpenseDocuments": [{"ExpenseIndex": 1}],
            "DocumentMetadata": {"Pages": 1},
            "ResponseMetadata": {"RequestId": "r-1"},
        }
        response = self.client.analyze(b"%PDF")
        self.boto.analyze_expense.assert_called_once_with(Document={"Bytes": b"%PDF"})
        assert "ResponseMetadata" not in response
        assert response["ExpenseDocuments"] == [{"ExpenseIndex": 1}]

    @pytest.mark.parametrize("code", sorted(PERMANENT_ERROR_CODES))
    def test_permanent_errors(self, code: str) -> None:
        self.boto.analyze_expense.side_effect = _client_error(code)
        with pytest.raises(UnsupportedDocument) as excinfo:
            self.client.analyze(b"%PDF")
        assert excinfo.value.code == code

    def test_throttling_is_transient(self) -> None:
        self.boto.analyze_expense.side_effect = _client_error("ThrottlingException")
        with pytest.raises(OcrServiceError) as excinfo:
            self.client.analyze(b"%PDF")
        assert not isinstance(excinfo.value, UnsupportedDocument)
        assert excinfo.value.code == "ThrottlingException"

    def test_connection_error_is_transient(self) -> None:
        self.boto.analyze_expense.side_effect = EndpointConnectionError(
            endpoint_url="https://textract.us-east-1.amazonaws.com"
        )
        with pytest.raises(OcrServiceError) as excinfo:
            self.client.analyze(b"%PDF")
        assert not isinstance(excinfo.value, UnsupportedDocument)
