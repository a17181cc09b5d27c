"""Contract confirmation service."""
