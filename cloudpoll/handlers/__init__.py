"""Local side effects of action records and index notifications."""
