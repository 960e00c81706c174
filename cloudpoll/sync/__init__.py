"""Poll cycle orchestration: normalization, routing and scheduling."""
