"""Upstream forwarding and per-request pipeline orchestration."""
