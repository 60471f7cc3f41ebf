"""Conflict parsing, candidate validation and the fallback ladder."""
