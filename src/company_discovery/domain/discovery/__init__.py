"""Governance layer in front of the company lookup provider."""
