"""Dramatiq worker entry point.

Importing this module configures logging and Sentry for the worker
process and imports the task module, which creates the Redis broker and
registers the actors.  ``.env`` files are loaded by
``receiptflow.core.config``.

Run with:
    dramatiq receiptflow.worker --processes 1 --threads 4
"""

import logging
import os

from receiptflow.core.config import settings
from receiptflow.core.observability import init_sentry

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("receiptflow.worker")

if init_sentry("worker"):
    logger.info("Sentry SDK initialized for worker")

# Libraries that read the key straight from os.environ
if settings.OPENAI_API_KEY:
    os.environ.setdefault("OPENAI_API_KEY", settings.OPENAI_API_KEY)

from receiptflow.core.tasks import broker  # noqa: E402

logger.info("Tasks registered: %s", ", ".join(sorted(broker.get_declared_actors())))
