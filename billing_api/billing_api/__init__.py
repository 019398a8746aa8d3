"""Kindred billing API service."""

__version__ = "0.4.0"
