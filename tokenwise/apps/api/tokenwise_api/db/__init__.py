"""Database models, engine and Redis client."""
