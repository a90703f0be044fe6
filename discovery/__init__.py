"""Multi-tenant discovery ingestion: source normalization, fetch adapters and scoring."""
