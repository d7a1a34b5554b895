"""Chat ingestion: adapters, normalization, fan-out and badges."""
