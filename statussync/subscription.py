"""
Subscription: the capability object a presentation layer holds.

Owns exactly one ReconciliationEngine and one EventStreamConnection for
one organization. Nothing is global: the socket lives and dies with
the subscription, and ``async with`` guarantees release on teardown.

Usage::

    async with Subscription(fetcher, aiohttp_connector(session, settings), settings) as sub:
        await sub.open("acme")
        print(sub.get_system_status())
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional, Protocol, Sequence
from urllib.parse import quote

from statussync import projection
from statussync.connection import Connector, EventStreamConnection, StateListener
from statussync.engine import IssueCallback, ReconciliationEngine, ViewListener
from statussync.errors import NotFoundError
from statussync.models import (
    ConnectionState,
    Incident,
    IssueKind,
    Snapshot,
    SyncIssue,
    SyncSettings,
    View,
)

log = logging.getLogger(__name__)


class SnapshotSource(Protocol):
    """What a subscription needs from the fetcher."""

    async def fetch_snapshot(self, org_id: str) -> Snapshot: ...

    async def fetch_incidents(self, org_id: str) -> Sequence[Incident]: ...


class Subscription:
    """
    Live, self-healing view of one organization's status.

    Listeners and the issue callback survive re-opening for another
    organization; the engine and connection do not.
    """

    def __init__(
        self,
        fetcher: SnapshotSource,
        connect: Connector,
        settings: Optional[SyncSettings] = None,
        on_issue: Optional[IssueCallback] = None,
    ) -> None:
        self.settings = settings or SyncSettings()
        self.org_id: Optional[str] = None

        self._fetcher = fetcher
        self._connect = connect
        self._on_issue = on_issue
        self._listeners: List[ViewListener] = []
        self._state_listeners: List[StateListener] = []
        self._engine: Optional[ReconciliationEngine] = None
        self._connection: Optional[EventStreamConnection] = None

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ── Lifecycle ─────────────────────────────────────────────

    async def open(self, org_id: str) -> View:
        """
        Start following ``org_id``; returns the initial View.

        Any previous connection is closed first. The initial snapshot is
        fetched exactly once, before the stream may deliver a single
        event.

        Raises:
            NotFoundError: the organization is unknown.
            TransportError: the initial snapshot could not be fetched.
        """
        await self.close()
        self.org_id = org_id

        engine = ReconciliationEngine(
            org_id,
            lambda: self._fetcher.fetch_incidents(org_id),
            settings=self.settings,
            on_issue=self._report,
        )
        engine.subscribe(self._publish)

        snapshot = await self._fetcher.fetch_snapshot(org_id)
        engine.initialize(snapshot)
        self._engine = engine

        self._connection = EventStreamConnection(
            org_id,
            self._stream_url(org_id),
            self._connect,
            on_frame=engine.apply_frame,
            on_open=self._resync,
            settings=self.settings,
            on_issue=self._report,
        )
        for state_listener in self._state_listeners:
            self._connection.add_state_listener(state_listener)
        task = await self._connection.start()
        task.add_done_callback(self._connection_finished)
        log.info("Subscribed to %s", org_id)
        return engine.get_view()

    async def close(self) -> None:
        """
        Close the stream and drop any in-flight re-fetch result.

        The last View stays readable after closing.
        """
        connection, self._connection = self._connection, None
        if connection is not None:
            await connection.close()
        if self._engine is not None and not self._engine.closed:
            await self._engine.close()
            log.info("Unsubscribed from %s", self.org_id)

    # ── Reads ─────────────────────────────────────────────────

    def get_view(self) -> View:
        if self._engine is None:
            return View()
        return self._engine.get_view()

    def get_system_status(self) -> str:
        if self._engine is None:
            return projection.system_status({})
        return self._engine.get_system_status()

    def subscribe(self, listener: ViewListener) -> Callable[[], None]:
        """Receive every View published from now on, across re-opens."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def add_state_listener(self, listener: StateListener) -> None:
        """Follow stream state transitions of every connection this subscription opens."""
        self._state_listeners.append(listener)
        if self._connection is not None:
            self._connection.add_state_listener(listener)

    @property
    def state(self) -> ConnectionState:
        if self._connection is None:
            return ConnectionState.CLOSED
        return self._connection.state

    @property
    def connection(self) -> Optional[EventStreamConnection]:
        return self._connection

    @property
    def engine(self) -> Optional[ReconciliationEngine]:
        return self._engine

    # ── Internals ─────────────────────────────────────────────

    def _stream_url(self, org_id: str) -> str:
        return f"{self.settings.ws_url.rstrip('/')}/{quote(org_id, safe='')}"

    async def _resync(self) -> None:
        """Catch up from a fresh snapshot every time the stream (re)opens."""
        engine = self._engine
        if engine is None or self.org_id is None:
            return
        since = engine.mark()
        snapshot = await self._fetcher.fetch_snapshot(self.org_id)
        engine.resync(snapshot, since)

    def _publish(self, view: View) -> None:
        for listener in list(self._listeners):
            try:
                listener(view)
            except Exception:
                log.exception("Subscription listener failed for %s", self.org_id)

    def _report(self, issue: SyncIssue) -> None:
        if self._on_issue is not None:
            self._on_issue(issue)

    def _connection_finished(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        if isinstance(exc, NotFoundError):
            log.error("Subscription to %s ended: %s", self.org_id, exc)
            detail = exc.message
        else:
            log.error("Stream for %s crashed: %r", self.org_id, exc)
            detail = repr(exc)
        self._report(
            SyncIssue(
                kind=IssueKind.FATAL,
                org_id=self.org_id or "",
                message="Live updates stopped",
                detail=detail,
            )
        )
