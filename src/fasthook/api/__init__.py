"""FastHook HTTP API."""
