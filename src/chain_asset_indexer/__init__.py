"""Chain Asset Indexer - block scanning and cached ledger lookups."""

__version__ = "0.1.0"
