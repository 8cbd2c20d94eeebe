"""Domain services: parsing, schema, writes, settings."""
