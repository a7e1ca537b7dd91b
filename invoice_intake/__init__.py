"""Scanned-invoice intake worker.

Watches a shared scanner folder, routes each PDF to its tenant, queues it
for upload to S3-compatible object storage, runs expense OCR on the
uploaded file, and records a normalized document row for review.
"""
