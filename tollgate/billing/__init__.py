"""Usage accounting: pricing, the usage ledger and outbox reconciliation."""
