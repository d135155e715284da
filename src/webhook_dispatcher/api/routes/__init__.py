"""Route modules for the webhook dispatcher API."""
