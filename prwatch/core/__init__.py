"""Sync engine: ledger, discovery, isolation, orchestration and retention."""
