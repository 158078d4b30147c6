"""Infrastructure services: database sessions and HTTP clients."""
