"""Operator event channel on a Redis Stream.

Escalations, exhausted retries, lock contention and task status changes are
appended to ``fleet:events:stream`` so dashboards and chat bridges can follow
the daemon.  Publishing is best-effort: Redis being down never affects the
daemon.
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from datetime import UTC, datetime
from typing import Any

from redis import ConnectionPool, Redis
from redis.backoff import NoBackoff
from redis.exceptions import RedisError
from redis.retry import Retry

log = logging.getLogger(__name__)

REDIS_URL = os.environ.get("FLEET_REDIS_URL", "redis://localhost:6379/0")
EVENTS_STREAM = "fleet:events:stream"
EVENTS_STREAM_MAXLEN = int(os.environ.get("FLEET_EVENTS_STREAM_MAXLEN", "1000"))
EVENT_VERSION = 1

# Publishing runs on the event loop; an unreachable Redis must fail fast.
SOCKET_CONNECT_TIMEOUT = float(os.environ.get("FLEET_REDIS_CONNECT_TIMEOUT", "0.5"))
SOCKET_TIMEOUT = float(os.environ.get("FLEET_REDIS_SOCKET_TIMEOUT", "1.0"))


class EventPublisher:
    def __init__(
        self,
        redis_url: str = REDIS_URL,
        *,
        stream: str = EVENTS_STREAM,
        maxlen: int = EVENTS_STREAM_MAXLEN,
    ) -> None:
        self.stream = stream
        self.maxlen = maxlen
        self._pool = ConnectionPool.from_url(
            redis_url,
            socket_connect_timeout=SOCKET_CONNECT_TIMEOUT,
            socket_timeout=SOCKET_TIMEOUT,
            retry=Retry(NoBackoff(), 0),
        )
        self._unavailable_logged = False

    def get_redis(self) -> Redis:
        return Redis(connection_pool=self._pool)

    def publish(
        self,
        event_type: str,
        entity_id: str,
        status: str,
        *,
        source: str = "daemon",
        extra: dict[str, Any] | None = None,
    ) -> None:
        """Append one event to the stream.  Never raises."""
        event: dict[str, Any] = {
            "event_id": str(uuid.uuid4()),
            "type": event_type,
            "id": entity_id,
            "status": status,
            "source": source,
            "v": EVENT_VERSION,
            "ts": datetime.now(UTC).isoformat(),
        }
        if extra:
            event.update(extra)
        payload = json.dumps(event, default=str)
        try:
            self.get_redis().xadd(
                self.stream, {"data": payload}, maxlen=self.maxlen, approximate=True
            )
        except RedisError:
            if self._unavailable_logged:
                log.debug("Event publish failed: %s %s", event_type, entity_id)
            else:
                log.warning(
                    "Event publish failed (Redis unavailable): %s %s", event_type, entity_id
                )
                self._unavailable_logged = True
            return
        self._unavailable_logged = False

    def close(self) -> None:
        self._pool.disconnect()
