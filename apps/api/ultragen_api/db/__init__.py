"""Delivery ledger persistence."""
