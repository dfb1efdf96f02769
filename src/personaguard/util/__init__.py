"""Shared utilities for errors, logging and file system access."""
