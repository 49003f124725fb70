"""HTTP API around the download job runner."""
