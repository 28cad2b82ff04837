"""Shared test helpers: content builders and an in-process seeder."""
