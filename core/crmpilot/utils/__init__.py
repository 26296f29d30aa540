"""Utilities - logging, errors, recovery and reply formatting."""
