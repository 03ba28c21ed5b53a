"""
Database package initialization.

The package follows a modular structure:
- base: Declarative base, mixins and portable column types
- connection: Async engine, session factory and FastAPI dependency
- models: SQLAlchemy ORM models for all entities
"""

__all__ = []
