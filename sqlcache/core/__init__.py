"""Core cache services: configuration, storage, locking and the cache engine."""
