"""HTTP middleware for the control API."""
