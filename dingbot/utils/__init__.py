"""Utility functions for dingbot."""
