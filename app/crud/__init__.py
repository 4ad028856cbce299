"""
CRUD operations (Create, Read, Update, Delete) for database models.

This layer provides a clean separation between services and database operations,
following the Repository pattern.
"""

from app.crud import identity, one_time_code

__all__ = ["identity", "one_time_code"]
