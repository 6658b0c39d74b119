"""Services package - external integrations (storage)."""
