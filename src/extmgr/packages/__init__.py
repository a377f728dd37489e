"""Installed packages: listing, per-entrypoint state and lifecycle commands."""
