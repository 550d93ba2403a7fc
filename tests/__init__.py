"""entity-sync test suite."""
