"""Infrastructure adapters: durable stores, provider client, service factory."""
