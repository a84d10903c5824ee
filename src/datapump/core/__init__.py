"""Core transfer machinery: config, backends, engine, orchestration."""
