"""Block scanning - classification, event extraction and scan jobs."""
