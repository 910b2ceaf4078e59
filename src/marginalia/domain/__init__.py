"""Domain layer: vector math and wire models."""
