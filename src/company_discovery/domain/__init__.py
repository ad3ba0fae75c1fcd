"""Domain layer for company discovery."""
