"""Shared infrastructure: configuration, paths, exceptions, logging."""
