"""Vector store, ingestion pipeline and search."""
