"""Upload queue processing and the automatic sync loop."""
