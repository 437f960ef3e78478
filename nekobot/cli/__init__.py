"""CLI module for nekobot."""
