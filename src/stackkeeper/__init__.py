"""stackkeeper: idempotent reconciliation of certificates, proxy config and services."""

__version__ = "0.1.0"
