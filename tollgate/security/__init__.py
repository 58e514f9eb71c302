"""Caller authentication (API keys) and admission control (rate windows)."""
