"""Utility modules for taskloop."""
