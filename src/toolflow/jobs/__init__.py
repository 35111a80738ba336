"""Job records, workflow definitions and their persistence."""
