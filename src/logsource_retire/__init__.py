"""Log source retirement orchestrator with rollback ledger."""

__version__ = "0.3.0"
