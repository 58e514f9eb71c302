"""Durable store: ORM models and session construction."""
