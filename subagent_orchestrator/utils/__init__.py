"""
Shared utilities: logging, configuration, metrics, validation and error handling.
"""
