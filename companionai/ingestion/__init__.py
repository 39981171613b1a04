"""Out-of-band population of the companion vector index."""
