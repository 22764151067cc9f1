"""Local ingestion service that receives pages pushed by the device agent."""
