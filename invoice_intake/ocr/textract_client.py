"""Client for AWS Textract expense analysis.

``analyze_expense`` takes the document bytes in a single synchronous call
and returns ``ExpenseDocuments`` with typed summary fields and per-field
confidence, plus the raw ``Blocks`` of recognised text.
"""

import time
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from invoice_intake.exceptions import OcrServiceError, UnsupportedDocument
from invoice_intake.utils.logger import get_logger

logger = get_logger(__name__)

# The service will never accept these documents, whatever the retry.
PERMANENT_ERROR_CODES = frozenset(
    {
        "UnsupportedDocumentException",
        "InvalidParameterException",
        "BadDocumentException",
        "DocumentTooLargeException",
    }
)


class TextractExpenseClient:
    """Sends documents to Textract ``AnalyzeExpense``.

    Args:
        region: AWS region of the Textract endpoint.
        client: Prebuilt boto3 Textract client, mainly for tests.
    """

    def __init__(self, region: str = "us-east-1", client: Any | None = None) -> None:
        self.region = region
        self.client = client or boto3.client("textract", region_name=region)

    def analyze(self, document: bytes) -> dict[str, Any]:
        """Run expense analysis on a document.

        Args:
            document: Raw PDF or image bytes.

        Returns:
            The service response without its ``ResponseMetadata``.

        Raises:
            UnsupportedDocument: The service rejected the document.
            OcrServiceError: Any other failure calling the service.
        """
        logger.info(
            "Sending document to Textract (%.1f KB, region %s)",
            len(document) / 1024,
            self.region,
        )
        start = time.perf_counter()
        try:
            response = self.client.analyze_expense(Document={"Bytes": document})
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            message = str(exc.response.get("Error", {}).get("Message", exc))
            if code in PERMANENT_ERROR_CODES:
                raise UnsupportedDocument(f"{code}: {message}", code=code) from exc
            raise OcrServiceError(f"{code or 'ClientError'}: {message}", code=code) from exc
        except BotoCoreError as exc:
            raise OcrServiceError(str(exc)) from exc

        elapsed = time.perf_counter() - start
        response = {k: v for k, v in response.items() if k != "ResponseMetadata"}
        logger.info(
            "Textract completed in %.2fs (%d expense documents)",
            elapsed,
            len(response.get("ExpenseDocuments", [])),
        )
        return response
