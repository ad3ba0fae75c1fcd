"""Command-line interface for the company discovery layer."""
