"""Core primitives: errors, logging, settings, schema, engine, retry and clock."""
