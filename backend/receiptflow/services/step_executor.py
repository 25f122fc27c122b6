"""Step executors: per-run memoization and routing-state storage.

The worker substrate (Dramatiq) retries a failed run from the top.  A
step executor makes that safe: a step that already returned a value for
a run is not executed again, its recorded result is replayed instead.
Only successful returns are recorded; a step that raises runs again on
the next attempt.

The executor also keeps the run's routing state between attempts, so the
coordinator can see that persistence already succeeded.

Step results and state must be JSON serialisable.
"""

from __future__ import annotations

import abc
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from redis import asyncio as aioredis

from receiptflow.core.config import settings

logger = logging.getLogger(__name__)

StepFn = Callable[[], Awaitable[Any]]


class StepExecutor(abc.ABC):
    """At-least-once execution with per-step memoization."""

    @abc.abstractmethod
    async def _get_step(self, run_id: str, name: str) -> tuple[bool, Any]:
        """Return ``(found, value)`` for a recorded step result."""

    @abc.abstractmethod
    async def _put_step(self, run_id: str, name: str, value: Any) -> None: ...

    @abc.abstractmethod
    async def load_state(self, run_id: str) -> Optional[Dict[str, Any]]: ...

    @abc.abstractmethod
    async def save_state(self, run_id: str, state: Dict[str, Any]) -> None: ...

    async def step(self, run_id: str, name: str, fn: StepFn) -> Any:
        """Run ``fn`` once per ``(run_id, name)``; replay its result afterwards."""
        found, value = await self._get_step(run_id, name)
        if found:
            logger.info("[steps] run=%s step=%s replayed", run_id, name)
            return value
        value = await fn()
        await self._put_step(run_id, name, value)
        return value


class InMemoryStepExecutor(StepExecutor):
    """Process-local executor, used by tests and single-process runs."""

    def __init__(self) -> None:
        self.steps: Dict[tuple[str, str], str] = {}
        self.states: Dict[str, str] = {}
        self.calls: Dict[tuple[str, str], int] = {}

    async def _get_step(self, run_id: str, name: str) -> tuple[bool, Any]:
        raw = self.steps.get((run_id, name))
        if raw is None:
            return False, None
        return True, json.loads(raw)

    async def _put_step(self, run_id: str, name: str, value: Any) -> None:
        self.steps[(run_id, name)] = json.dumps(value)

    async def step(self, run_id: str, name: str, fn: StepFn) -> Any:
        key = (run_id, name)
        if key not in self.steps:
            self.calls[key] = self.calls.get(key, 0) + 1
        return await super().step(run_id, name, fn)

    async def load_state(self, run_id: str) -> Optional[Dict[str, Any]]:
        raw = self.states.get(run_id)
        return json.loads(raw) if raw is not None else None

    async def save_state(self, run_id: str, state: Dict[str, Any]) -> None:
        self.states[run_id] = json.dumps(state)


class RedisStepExecutor(StepExecutor):
    """Redis-backed executor shared by all worker processes."""

    def __init__(self, client: Optional[aioredis.Redis] = None, ttl_seconds: Optional[int] = None) -> None:
        self._client = client or aioredis.from_url(settings.REDIS_URL, decode_responses=True)
        self._ttl = int(ttl_seconds or settings.STEP_STATE_TTL_SECONDS)

    @staticmethod
    def step_key(run_id: str, name: str) -> str:
        return f"pipeline:run:{run_id}:step:{name}"

    @staticmethod
    def state_key(run_id: str) -> str:
        return f"pipeline:run:{run_id}:state"

    async def _get_step(self, run_id: str, name: str) -> tuple[bool, Any]:
        raw = await self._client.get(self.step_key(run_id, name))
        if raw is None:
            return False, None
        return True, json.loads(raw)

    async def _put_step(self, run_id: str, name: str, value: Any) -> None:
        await self._client.set(self.step_key(run_id, name), json.dumps(value), ex=self._ttl)

    async def load_state(self, run_id: str) -> Optional[Dict[str, Any]]:
        raw = await self._client.get(self.state_key(run_id))
        return json.loads(raw) if raw is not None else None

    async def save_state(self, run_id: str, state: Dict[str, Any]) -> None:
        await self._client.set(self.state_key(run_id), json.dumps(state), ex=self._ttl)

    async def close(self) -> None:
        await self._client.aclose()
