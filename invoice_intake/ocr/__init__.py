"""OCR service access and response parsing."""
