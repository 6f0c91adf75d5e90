"""HTTP control API."""
