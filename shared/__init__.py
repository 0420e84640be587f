"""Shared schemas, scoring and error types used by agents and backend."""
