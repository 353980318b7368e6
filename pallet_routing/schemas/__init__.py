"""
Public Pydantic schemas used by FastAPI routes, services, and tests.

Schemas cover routing requests, read models projected from the ledgers,
the domain event envelope, and common reusable models such as error responses.
"""

from .common import MessageResponse  # noqa: F401
