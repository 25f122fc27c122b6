"""ORM tables, enums and Pydantic schemas."""

from .tables import Receipt, UsageEvent  # noqa: F401
