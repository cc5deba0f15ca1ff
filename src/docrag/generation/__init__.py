"""Answer generation on top of retrieval."""
