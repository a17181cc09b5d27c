"""Infrastructure adapters: Postgres, Redis, auth."""
