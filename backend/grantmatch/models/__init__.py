"""Pydantic API models and SQLAlchemy ORM models (``grantmatch.models.db``)."""
