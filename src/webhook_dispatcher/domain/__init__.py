"""Webhook domain types."""
