"""Domain types shared across the store, feeds and reconciliation."""
