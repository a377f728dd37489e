"""Standalone local extensions."""
