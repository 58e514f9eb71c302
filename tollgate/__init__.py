"""Tollgate: metering proxy for OpenAI-compatible completion APIs."""

__version__ = "0.1.0"
