"""Configuration, project layout and durable poll positions."""
