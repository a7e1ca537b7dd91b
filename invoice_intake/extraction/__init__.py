"""Field extraction helpers shared by the OCR response parser."""
