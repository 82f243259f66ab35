"""Correlation store: approval instance code -> calendar time-off event id.

Entries live in Redis with a TTL equal to the remaining duration of the
leave, so they disappear on their own once a revert could no longer matter.
Key format: ``{namespace}:approval:{instance_code}``.

A revert that consumes an entry does not delete it; the key lingers until it
expires.
"""

from __future__ import annotations

import abc
import logging
import math
from dataclasses import dataclass
from datetime import timedelta
from enum import StrEnum
from typing import Any

import redis.asyncio as redis
from redis.exceptions import RedisError

from leave_helper.errors import CorrelationStoreError

logger = logging.getLogger(__name__)

DEFAULT_KEY_NAMESPACE = "leaveHelper"


def correlation_key(instance_code: str, namespace: str = DEFAULT_KEY_NAMESPACE) -> str:
    return f"{namespace}:approval:{instance_code}"


class CorrelationState(StrEnum):
    """Lifecycle of an approval instance as seen through the store."""

    CACHED = "cached"
    ABSENT = "absent"


@dataclass(frozen=True)
class CorrelationLookup:
    state: CorrelationState
    event_id: str | None = None

    @property
    def cached(self) -> bool:
        return self.state is CorrelationState.CACHED


class CorrelationStore(abc.ABC):
    """Store contract used by the event handlers."""

    @abc.abstractmethod
    async def put(self, instance_code: str, event_id: str, ttl: timedelta) -> bool:
        """Store *event_id* under *instance_code* for *ttl*.

        A non-positive *ttl* means the leave is already over: nothing is
        written and ``False`` is returned.

        Raises:
            CorrelationStoreError: when the write fails.
        """
        ...

    @abc.abstractmethod
    async def get(self, instance_code: str) -> str | None:
        """Return the stored event id, or ``None`` when absent or expired.

        Raises:
            CorrelationStoreError: when the read fails.
        """
        ...

    async def lookup(self, instance_code: str) -> CorrelationLookup:
        event_id = await self.get(instance_code)
        if event_id is None:
            return CorrelationLookup(state=CorrelationState.ABSENT)
        return CorrelationLookup(state=CorrelationState.CACHED, event_id=event_id)

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:  # noqa: B027
        """Release store resources."""


class RedisCorrelationStore(CorrelationStore):
    """Redis-backed correlation store (``SETEX`` / ``GET``)."""

    def __init__(
        self,
        client: redis.Redis,
        *,
        namespace: str = DEFAULT_KEY_NAMESPACE,
        owns_client: bool = False,
    ) -> None:
        self._client = client
        self._namespace = namespace
        self._owns_client = owns_client

    @classmethod
    def from_url(
        cls,
        redis_url: str,
        *,
        namespace: str = DEFAULT_KEY_NAMESPACE,
        **client_kwargs: Any,
    ) -> RedisCorrelationStore:
        """Build a store from a ``redis://`` connection string.

        Raises:
            ValueError: when the URL cannot be parsed.
        """
        client_kwargs.setdefault("decode_responses", True)
        client = redis.from_url(redis_url, **client_kwargs)
        return cls(client, namespace=namespace, owns_client=True)

    @property
    def namespace(self) -> str:
        return self._namespace

    def key_for(self, instance_code: str) -> str:
        return correlation_key(instance_code, self._namespace)

    async def put(self, instance_code: str, event_id: str, ttl: timedelta) -> bool:
        if ttl <= timedelta(0):
            logger.debug(
                "Skipping correlation write for non-positive TTL",
                extra={"instance_code": instance_code, "ttl_seconds": ttl.total_seconds()},
            )
            return False

        key = self.key_for(instance_code)
        # SETEX takes whole seconds; round up so sub-second leftovers still expire at leave end.
        ttl_seconds = max(math.ceil(ttl.total_seconds()), 1)
        try:
            await self._client.setex(key, ttl_seconds, event_id)
        except RedisError as exc:
            raise CorrelationStoreError(
                str(exc),
                operation="correlation_put",
                data={"key": key},
            ) from exc
        return True

    async def get(self, instance_code: str) -> str | None:
        key = self.key_for(instance_code)
        try:
            value = await self._client.get(key)
        except RedisError as exc:
            raise CorrelationStoreError(
                str(exc),
                operation="correlation_get",
                data={"key": key},
            ) from exc

        if value is None:
            return None
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return str(value)

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except RedisError as exc:
            raise CorrelationStoreError(str(exc), operation="correlation_ping") from exc

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
