"""CLI module for dingbot."""
