"""Pydantic schemas for the control API."""
