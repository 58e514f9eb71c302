"""Tollgate HTTP API package.

Exposes the metered OpenAI-compatible surface under /v1 and the /health
probe.

Mount point: /v1/
Auth:        X-API-Key header or Authorization: Bearer <key>
Metering:    token usage debited from the account balance after each
             successful completion/embedding call
"""
