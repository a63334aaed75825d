"""Market data layer - token identities and market snapshots."""
