"""Services package: local cache stores and remote backends."""
