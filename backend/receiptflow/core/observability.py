"""Sentry wiring shared by the API and the worker.

Every helper is a no-op while ``SENTRY_DSN`` is unset, so call sites in
the pipeline and the routes never need to check.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from receiptflow.core.config import settings

logger = logging.getLogger(__name__)

_SECRET_HEADERS = frozenset({"authorization", "cookie", "set-cookie", "x-api-key"})
_initialised_for: Optional[str] = None


def _scrub_event(event: Dict[str, Any], hint: Dict[str, Any] | None = None):
	"""Strip credentials and uploaded bodies from outgoing events."""
	request = event.get("request") or {}
	headers = request.get("headers") or {}
	for name in [h for h in headers if h.lower() in _SECRET_HEADERS]:
		del headers[name]
	# Receipt PDFs and extracted data stay out of Sentry
	request.pop("data", None)
	event["request"] = request
	return event


def _enabled() -> bool:
	return bool(settings.SENTRY_DSN)


def init_sentry(service: str) -> bool:
	"""Initialise Sentry for ``service`` ("api" or "worker").

	Safe to call more than once; returns whether Sentry is active.
	"""
	global _initialised_for
	if not _enabled():
		return False
	if _initialised_for is not None:
		return True
	sentry_sdk.init(
		dsn=settings.SENTRY_DSN,
		environment=settings.ENVIRONMENT,
		release=settings.SENTRY_RELEASE,
		integrations=[FastApiIntegration(), SqlalchemyIntegration()],
		traces_sample_rate=float(settings.SENTRY_TRACES_SAMPLE_RATE or 0),
		profiles_sample_rate=float(settings.SENTRY_PROFILES_SAMPLE_RATE or 0),
		before_send=_scrub_event,
	)
	sentry_sdk.set_tag("service", service)
	_initialised_for = service
	return True


def sentry_set_tags(tags: Dict[str, Any]) -> None:
	if _enabled():
		for key, value in (tags or {}).items():
			sentry_sdk.set_tag(str(key), "" if value is None else str(value)[:128])


def sentry_breadcrumb(category: str, message: str, level: str = "info", data: Optional[Dict[str, Any]] = None) -> None:
	"""Record a pipeline or request lifecycle step."""
	if _enabled():
		sentry_sdk.add_breadcrumb(category=category, message=message, level=level, data=data or {})


def sentry_metric_inc(name: str, value: int = 1, tags: Optional[Dict[str, Any]] = None) -> None:
	"""Increment a Sentry counter; dropped quietly when metrics are unavailable."""
	if not _enabled():
		return
	try:
		from sentry_sdk import metrics

		metrics.increment(name, value=value, tags={str(k): str(v)[:64] for k, v in (tags or {}).items()})
	except Exception as exc:
		logger.debug("sentry metric %s dropped: %s", name, exc)


def sentry_capture(exc: BaseException) -> None:
	if _enabled():
		sentry_sdk.capture_exception(exc)


__all__ = ["init_sentry", "sentry_set_tags", "sentry_breadcrumb", "sentry_metric_inc", "sentry_capture"]
