"""Helpers shared across ethflow modules."""
