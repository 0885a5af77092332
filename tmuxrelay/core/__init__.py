"""Core infrastructure: paths, constants, exceptions and debug logging."""
