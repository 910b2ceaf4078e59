"""Infrastructure adapters: embedding model backends and the durable cache."""
