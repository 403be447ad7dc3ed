"""Ambient infrastructure: settings, logging and metrics."""
