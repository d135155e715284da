"""Signed webhook delivery dispatcher."""
