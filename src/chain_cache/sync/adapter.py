from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from chain_cache.core.errors import (
    MalformedEventError,
    RangeLimitError,
    SourceUnavailable,
    TransientSourceError,
    to_sync_error,
)
from chain_cache.core.models import EndpointSnapshot, RawEvent, SourceConfig, SourceEndpoint
from chain_cache.sync.backoff import backoff_delay
from chain_cache.sync.base import EndpointClient
from chain_cache.sync.endpoints import EndpointPool, TransitionListener
from chain_cache.sync.subscription import LogSubscription

logger = logging.getLogger(__name__)

T = TypeVar("T")
ClientFactory = Callable[[SourceConfig, SourceEndpoint], EndpointClient]


class EventSourceAdapter:
    """
    Uniform access to one source chain over its ranked endpoints.

    Each call goes to the endpoint the pool selects. Transport failures are
    recorded against that endpoint and the call is retried on whatever the pool
    selects next; range-limit and decoding errors are the request's fault, not
    the endpoint's, so they are raised to the caller unchanged.
    """

    def __init__(
        self,
        source: SourceConfig,
        client_factory: ClientFactory,
        *,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        max_cooldown_seconds: float = 900.0,
        attempts_per_call: int = 3,
        retry_base_delay_seconds: float = 0.0,
        retry_max_delay_seconds: float = 2.0,
        on_transition: TransitionListener | None = None,
        pool: EndpointPool | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.source = source
        self.client_factory = client_factory
        self.attempts_per_call = max(1, int(attempts_per_call))
        self.retry_base_delay_seconds = max(0.0, float(retry_base_delay_seconds))
        self.retry_max_delay_seconds = max(self.retry_base_delay_seconds, float(retry_max_delay_seconds))
        self.sleep = sleep
        self.pool = pool or EndpointPool(
            source.endpoints,
            failure_threshold=failure_threshold,
            cooldown_seconds=cooldown_seconds,
            max_cooldown_seconds=max_cooldown_seconds,
            on_transition=on_transition,
        )
        self._clients: dict[str, EndpointClient] = {}

    @property
    def source_id(self) -> str:
        return self.source.source_id

    def head_height(self) -> int:
        return self._call("block_number", lambda client: client.block_number())

    def block_hash(self, block_number: int) -> str | None:
        return self._call("block_hash", lambda client: client.block_hash(block_number))

    def logs_in_range(self, from_block: int, to_block: int, *, entity_id: str | None = None) -> list[RawEvent]:
        """
        Fetch schema events in the inclusive range, chunked by the source's
        ``max_log_range`` and split further whenever an endpoint rejects a
        range as too large. Result is sorted by (block, log index) with
        duplicate positions removed.
        """
        if to_block < from_block:
            return []
        step = self.source.max_log_range
        events: list[RawEvent] = []
        for start in range(from_block, to_block + 1, step):
            end = min(start + step - 1, to_block)
            events.extend(self._fetch_range(start, end, entity_id))
        return _sorted_unique(events)

    def logs_for_entity(self, entity_id: str, from_block: int, to_block: int) -> list[RawEvent]:
        return self.logs_in_range(from_block, to_block, entity_id=entity_id)

    def subscribe(
        self,
        event_names: list[str],
        from_block: int,
        *,
        poll_interval_seconds: float | None = None,
    ) -> LogSubscription:
        subscription = LogSubscription(
            self,
            event_names=event_names,
            from_block=from_block,
            poll_interval_seconds=poll_interval_seconds or self.source.poll_interval_seconds,
        )
        subscription.start()
        return subscription

    def current_endpoint(self) -> str | None:
        endpoint = self.pool.current
        return endpoint.url if endpoint else None

    def endpoint_snapshot(self) -> list[EndpointSnapshot]:
        return self.pool.snapshot()

    def _fetch_range(self, from_block: int, to_block: int, entity_id: str | None) -> list[RawEvent]:
        try:
            return self._call(
                "get_logs",
                lambda client: client.get_logs(from_block, to_block, entity_id=entity_id),
            )
        except RangeLimitError as exc:
            if from_block >= to_block:
                raise
            left_end = (from_block + to_block) // 2
            suggested = exc.suggested_range
            if suggested and suggested[0] == from_block and from_block <= suggested[1] < to_block:
                left_end = suggested[1]
            logger.debug(
                "%s: range %s-%s rejected, splitting at %s",
                self.source_id,
                from_block,
                to_block,
                left_end,
            )
            return self._fetch_range(from_block, left_end, entity_id) + self._fetch_range(
                left_end + 1, to_block, entity_id
            )

    def _client(self, endpoint: SourceEndpoint) -> EndpointClient:
        client = self._clients.get(endpoint.url)
        if client is None:
            client = self.client_factory(self.source, endpoint)
            self._clients[endpoint.url] = client
        return client

    def _call(self, name: str, fn: Callable[[EndpointClient], T]) -> T:
        errors: list[str] = []
        failed: SourceEndpoint | None = None
        for attempt in range(self.attempts_per_call):
            endpoint = self.pool.select()
            if endpoint is failed and self.retry_base_delay_seconds > 0:
                self.sleep(
                    backoff_delay(
                        attempt,
                        base_seconds=self.retry_base_delay_seconds,
                        max_seconds=self.retry_max_delay_seconds,
                    )
                )
            try:
                result = fn(self._client(endpoint))
            except Exception as exc:  # noqa: BLE001
                err = to_sync_error(exc)
                if isinstance(err, (RangeLimitError, MalformedEventError)):
                    raise err from exc
                reason = f"{name}: {err.category.value}: {err}"
                self.pool.record_failure(endpoint, reason)
                errors.append(f"{endpoint.url}: {err}")
                logger.warning("%s: %s failed on %s: %s", self.source_id, name, endpoint.url, err)
                failed = endpoint
                continue
            self.pool.record_success(endpoint)
            return result
        if not self.pool.has_selectable():
            raise SourceUnavailable(f"{self.source_id}: all endpoints failed {name}: " + " | ".join(errors))
        raise TransientSourceError(f"{self.source_id}: {name} failed after retries: " + " | ".join(errors))


def _sorted_unique(events: list[RawEvent]) -> list[RawEvent]:
    seen: set[tuple[int, int]] = set()
    out: list[RawEvent] = []
    for event in sorted(events, key=lambda e: e.position):
        if event.position in seen:
            continue
        seen.add(event.position)
        out.append(event)
    return out
