"""SQLite persistence for limit definitions and usage pivots."""
