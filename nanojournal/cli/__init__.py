"""CLI module for nanojournal."""
