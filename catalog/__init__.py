"""B2B marketplace listing ingestion: fetch, parse, classify, cache images, upsert."""

__version__ = "0.1.0"
