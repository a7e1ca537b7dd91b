"""Operator-facing processing log."""
