"""Board engine services: projection, permissions, optimistic mutations, and sync."""
