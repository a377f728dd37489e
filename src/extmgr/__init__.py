"""Extension and package state engine for the pi coding agent."""

__version__ = "0.3.0"
