"""Command line interface for extmgr."""
