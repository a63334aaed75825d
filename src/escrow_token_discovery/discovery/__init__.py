"""Discovery layer - per-escrow scanning, accumulation and checkpointing."""
