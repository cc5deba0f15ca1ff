"""Embedding providers and batch processing."""
