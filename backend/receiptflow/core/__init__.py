"""Core application services and infrastructure layer.

Exports configuration settings to simplify import paths inside tests
(e.g. ``from receiptflow.core import settings``).
"""

from .config import settings  # noqa: F401
