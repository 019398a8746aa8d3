"""HTTP middleware and request-scoped authentication."""
