"""Outbox delivery to the remote system of record.

``SyncProcessor.flush()`` drains due outbox entries against a
``RemoteCollaborator``. A failed attempt is rescheduled with exponential
backoff (``2**retries`` seconds); an entry that fails ``max_retries`` times is
dropped and reported as abandoned. Abandonment is a sync-health metric: the
local mutation that produced the entry has already succeeded and is never
rolled back.

Entries for the same defect are delivered strictly in creation order. While
an earlier entry for a defect is waiting out its backoff, later entries for
that defect are held back. A new-occurrence reopen also holds back entries
for the defect it creates.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import httpx

from faultline.core import FaultlineDB, env_override, read_config
from faultline.errors import DeliveryAbandoned, DeliveryFailed
from faultline.types.outbox import (
    CloseDefectPayload,
    CreateDefectPayload,
    DeleteDefectPayload,
    FlushResult,
    OutboxEntryDict,
    ReopenDefectPayload,
    UpdateDefectPayload,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 5
DEFAULT_TIMEOUT = 10.0
ABANDONED_HISTORY = 100


def backoff_seconds(retries: int) -> float:
    return float(2**retries)


def _ordering_keys(entry: OutboxEntryDict) -> set[str]:
    """Defect ids whose later entries must wait behind *entry*.

    A new-occurrence reopen is queued under the original defect but also
    creates the new one remotely.
    """
    keys = {entry["defect_id"]}
    payload = entry["payload"]
    if payload["type"] == "reopen" and payload["new_defect"] is not None:
        keys.add(payload["new_defect"]["id"])
    return keys


# ---------------------------------------------------------------------------
# Remote collaborator
# ---------------------------------------------------------------------------


class RemoteCollaborator(Protocol):
    """One coroutine per mutation type. Raise ``DeliveryFailed`` to have the entry retried."""

    async def create_defect(self, defect_id: str, payload: CreateDefectPayload) -> None: ...

    async def update_defect(self, defect_id: str, payload: UpdateDefectPayload) -> None: ...

    async def delete_defect(self, defect_id: str, payload: DeleteDefectPayload) -> None: ...

    async def close_defect(self, defect_id: str, payload: CloseDefectPayload) -> None: ...

    async def reopen_defect(self, defect_id: str, payload: ReopenDefectPayload) -> None: ...


class HttpRemote:
    """JSON-over-HTTP collaborator. Any transport error or non-2xx response is a ``DeliveryFailed``."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=httpx.Timeout(timeout), headers=headers)

    async def __aenter__(self) -> HttpRemote:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _send(self, method: str, path: str, body: Any = None) -> None:
        try:
            response = await self._client.request(method, path, json=body)
        except httpx.HTTPError as exc:
            msg = f"{method} {path} failed: {exc!r}"
            raise DeliveryFailed(msg) from exc
        if not response.is_success:
            msg = f"{method} {path} returned {response.status_code}"
            raise DeliveryFailed(msg)

    async def create_defect(self, defect_id: str, payload: CreateDefectPayload) -> None:
        await self._send("POST", "/defects", payload["defect"])

    async def update_defect(self, defect_id: str, payload: UpdateDefectPayload) -> None:
        await self._send("PATCH", f"/defects/{defect_id}", payload["changes"])

    async def delete_defect(self, defect_id: str, payload: DeleteDefectPayload) -> None:
        await self._send("DELETE", f"/defects/{defect_id}")

    async def close_defect(self, defect_id: str, payload: CloseDefectPayload) -> None:
        await self._send(
            "POST",
            f"/defects/{defect_id}/close",
            {"resolution_notes": payload["resolution_notes"], "closed_at": payload["closed_at"]},
        )

    async def reopen_defect(self, defect_id: str, payload: ReopenDefectPayload) -> None:
        await self._send(
            "POST",
            f"/defects/{defect_id}/reopen",
            {"mode": payload["mode"], "reason": payload["reason"], "new_defect": payload["new_defect"]},
        )


# ---------------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SyncOptions:
    remote_url: str | None = None
    timeout: float = DEFAULT_TIMEOUT
    max_retries: int = DEFAULT_MAX_RETRIES


def load_sync_options(faultline_dir: Path) -> SyncOptions:
    """Sync options from config.json, with FAULTLINE_REMOTE_URL / FAULTLINE_SYNC_TIMEOUT taking precedence."""
    config = read_config(faultline_dir)
    remote_url = env_override("FAULTLINE_REMOTE_URL", config.get("remote_url") or None)
    timeout = float(config.get("sync_timeout", DEFAULT_TIMEOUT))
    raw_timeout = env_override("FAULTLINE_SYNC_TIMEOUT")
    if raw_timeout is not None:
        try:
            timeout = float(raw_timeout)
        except ValueError:
            logger.warning("Ignoring FAULTLINE_SYNC_TIMEOUT=%r: not a number", raw_timeout)
    if timeout <= 0:
        logger.warning("Ignoring non-positive sync timeout %s, using %s", timeout, DEFAULT_TIMEOUT)
        timeout = DEFAULT_TIMEOUT
    return SyncOptions(remote_url=remote_url, timeout=timeout, max_retries=int(config.get("max_retries", DEFAULT_MAX_RETRIES)))


# ---------------------------------------------------------------------------
# Processor
# ---------------------------------------------------------------------------


class SyncProcessor:
    """Drains the outbox. One flush runs at a time; an overlapping call returns ``busy``."""

    def __init__(
        self,
        db: FaultlineDB,
        remote: RemoteCollaborator,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        timeout: float = DEFAULT_TIMEOUT,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_retries < 1:
            msg = "max_retries must be at least 1"
            raise ValueError(msg)
        self.db = db
        self.remote = remote
        self.max_retries = max_retries
        self.timeout = timeout
        self.clock = clock
        self._lock = asyncio.Lock()
        self.abandoned: deque[DeliveryAbandoned] = deque(maxlen=ABANDONED_HISTORY)
        self.abandoned_total = 0
        self.last_result: FlushResult | None = None

    @property
    def is_flushing(self) -> bool:
        return self._lock.locked()

    async def _dispatch(self, entry: OutboxEntryDict) -> None:
        payload = entry["payload"]
        defect_id = entry["defect_id"]
        if payload["type"] == "create":
            await self.remote.create_defect(defect_id, payload)
        elif payload["type"] == "update":
            await self.remote.update_defect(defect_id, payload)
        elif payload["type"] == "delete":
            await self.remote.delete_defect(defect_id, payload)
        elif payload["type"] == "close":
            await self.remote.close_defect(defect_id, payload)
        elif payload["type"] == "reopen":
            await self.remote.reopen_defect(defect_id, payload)
        else:
            msg = f"Unknown mutation type {payload['type']!r} in outbox entry {entry['id']}"
            raise DeliveryFailed(msg)

    async def deliver(self, entry: OutboxEntryDict) -> None:
        """One bounded delivery attempt. Any failure, timeout included, surfaces as ``DeliveryFailed``."""
        try:
            await asyncio.wait_for(self._dispatch(entry), timeout=self.timeout)
        except DeliveryFailed:
            raise
        except TimeoutError as exc:
            msg = f"Delivery timed out after {self.timeout}s"
            raise DeliveryFailed(msg) from exc
        except Exception as exc:
            msg = f"Remote raised {exc!r}"
            raise DeliveryFailed(msg) from exc

    async def flush(self) -> FlushResult:
        """Attempt every due entry once, oldest first. Safe to call repeatedly and on an empty outbox."""
        if self._lock.locked():
            logger.debug("Flush already in progress; skipping")
            return {"succeeded": 0, "abandoned": 0, "retrying": 0, "deferred": 0, "busy": True, "abandoned_entries": []}

        async with self._lock:
            started = time.monotonic()
            result: FlushResult = {"succeeded": 0, "abandoned": 0, "retrying": 0, "deferred": 0, "busy": False, "abandoned_entries": []}
            now = self.clock()
            blocked: set[str] = set()
            for entry in self.db.list_outbox():
                defect_id = entry["defect_id"]
                keys = _ordering_keys(entry)
                if entry["next_attempt_at"] > now or not blocked.isdisjoint(keys):
                    blocked.update(keys)
                    result["deferred"] += 1
                    continue
                extra = {"entry_id": entry["id"], "mutation": entry["type"], "defect_id": defect_id}
                try:
                    await self.deliver(entry)
                except DeliveryFailed as exc:
                    blocked.update(keys)
                    self._record_failure(entry, exc, now, result, extra)
                    continue
                self.db.remove_outbox_entry(entry["id"])
                result["succeeded"] += 1
                logger.debug("Delivered %s for %s", entry["type"], defect_id, extra=extra)

            duration_ms = round((time.monotonic() - started) * 1000, 1)
            if result["succeeded"] or result["retrying"] or result["abandoned"]:
                logger.info(
                    "Flush: %d delivered, %d retrying, %d abandoned, %d deferred",
                    result["succeeded"],
                    result["retrying"],
                    result["abandoned"],
                    result["deferred"],
                    extra={"op": "flush", "duration_ms": duration_ms},
                )
            self.last_result = result
            return result

    def _record_failure(self, entry: OutboxEntryDict, exc: DeliveryFailed, now: float, result: FlushResult, extra: dict[str, Any]) -> None:
        retries = entry["retries"] + 1
        if retries >= self.max_retries:
            self.db.remove_outbox_entry(entry["id"])
            abandoned = DeliveryAbandoned(entry["id"], entry["type"], entry["defect_id"], retries, str(exc))
            self.abandoned.append(abandoned)
            self.abandoned_total += 1
            result["abandoned"] += 1
            result["abandoned_entries"].append(entry["id"])
            logger.error("%s", abandoned, extra={**extra, "retries": retries, "error": str(exc)})
            return
        delay = backoff_seconds(retries)
        self.db.reschedule_outbox_entry(entry, retries=retries, next_attempt_at=now + delay, error=str(exc))
        result["retrying"] += 1
        logger.warning(
            "Delivery of %s for %s failed (attempt %d), retrying in %.0fs: %s",
            entry["type"],
            entry["defect_id"],
            retries,
            delay,
            exc,
            extra={**extra, "retries": retries, "error": str(exc)},
        )

    async def run(
        self,
        interval: float = 30.0,
        stop_event: asyncio.Event | None = None,
        on_result: Callable[[FlushResult], None] | None = None,
    ) -> None:
        """Flush every *interval* seconds until *stop_event* is set.

        A pass that raises is logged and the loop carries on with the next one.
        """
        stop_event = stop_event or asyncio.Event()
        while not stop_event.is_set():
            try:
                result = await self.flush()
            except Exception:
                logger.exception("Sync pass failed", extra={"op": "flush"})
            else:
                if on_result is not None and not result["busy"]:
                    on_result(result)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except TimeoutError:
                continue
