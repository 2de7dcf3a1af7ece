"""Per-ticket pipeline, batch driver and their data model."""
