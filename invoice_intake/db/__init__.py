"""Relational persistence: queue rows, document rows and processing logs."""
