"""Channel adapter core: platform adapters, webhook ingestion and the outbound queue."""
