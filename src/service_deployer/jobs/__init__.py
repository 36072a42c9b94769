"""Scheduled idempotent reconciliation jobs (DNS records, TLS certificates)."""
