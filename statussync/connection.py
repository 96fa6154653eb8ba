"""
Event Stream Connection: one push channel per subscription.

State machine::

    CONNECTING ──> OPEN ──> CLOSED        (clean close, code 1000, or close())
        ^            │
        │            └────> RECONNECTING  (error / abnormal close)
        └───────────────────────┘  after capped exponential backoff

Entering OPEN awaits the ``on_open`` hook before a single frame is
read. The subscription uses that hook to resynchronize from a fresh
snapshot: after an outage of unknown length the stream cannot be
assumed gap-free. Frames the server sends meanwhile stay queued in the
socket and are delivered in order once the hook returns.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional, Protocol

import aiohttp

from statussync.backoff import backoff_delay
from statussync.errors import NotFoundError, TransportError
from statussync.models import ConnectionState, IssueKind, SyncIssue, SyncSettings

log = logging.getLogger(__name__)

FrameHandler = Callable[[Any], Any]
OpenHook = Callable[[], Awaitable[None]]
IssueCallback = Callable[[SyncIssue], None]
StateListener = Callable[[ConnectionState], None]

# Faults that mean "this socket is gone, try another one"
_NETWORK_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, OSError, TransportError)


class WebSocketLike(Protocol):
    """The slice of ``aiohttp.ClientWebSocketResponse`` used here."""

    close_code: Optional[int]

    def __aiter__(self) -> Any: ...

    async def close(self) -> Any: ...


Connector = Callable[[str], Awaitable[WebSocketLike]]


def aiohttp_connector(session: aiohttp.ClientSession, settings: SyncSettings) -> Connector:
    """Connector opening real WebSockets on a shared aiohttp session."""

    async def connect(url: str) -> WebSocketLike:
        return await session.ws_connect(url, heartbeat=settings.heartbeat_seconds)

    return connect


class EventStreamConnection:
    """
    Owns the connect / retry / teardown lifecycle of one WebSocket.

    Attributes:
        org_id: Organization the channel is addressed to.
        url: Full WebSocket URL, ``{ws_url}/{org_id}``.
        settings: Timeouts and backoff tuning.
    """

    def __init__(
        self,
        org_id: str,
        url: str,
        connect: Connector,
        on_frame: FrameHandler,
        on_open: OpenHook,
        settings: Optional[SyncSettings] = None,
        on_issue: Optional[IssueCallback] = None,
    ) -> None:
        self.org_id = org_id
        self.url = url
        self.settings = settings or SyncSettings()

        self._connect = connect
        self._on_frame = on_frame
        self._on_open = on_open
        self._on_issue = on_issue
        self._state_listeners: List[StateListener] = []

        self._state = ConnectionState.CLOSED
        self._ws: Optional[WebSocketLike] = None
        self._task: Optional[asyncio.Task] = None
        self._closing = False

        # Backoff state
        self._consecutive_errors = 0
        self._degraded_reported = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    def add_state_listener(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> asyncio.Task:
        """
        Launch the connection loop as a background task.

        A connection that is already running is closed first, so at most
        one socket exists for this object at any time.
        """
        if self._task is not None:
            await self.close()
        self._closing = False
        self._task = asyncio.create_task(self.run(), name=f"stream-{self.org_id}")
        return self._task

    async def close(self) -> None:
        """Tear the connection down for good; the state becomes CLOSED."""
        self._closing = True
        ws = self._ws
        if ws is not None:
            await ws.close()
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._set_state(ConnectionState.CLOSED)

    async def run(self) -> None:
        """
        Connect, resync, stream, and reconnect until closed.

        Raises:
            NotFoundError: the organization disappeared (from ``on_open``).
        """
        try:
            while not self._closing:
                self._set_state(ConnectionState.CONNECTING)
                try:
                    ws = await asyncio.wait_for(
                        self._connect(self.url),
                        timeout=self.settings.connect_timeout,
                    )
                except _NETWORK_ERRORS as exc:
                    await self._wait_before_retry(f"connect failed: {exc or type(exc).__name__}")
                    continue

                self._ws = ws
                try:
                    clean = await self._session(ws)
                    reason = f"closed with code {ws.close_code}"
                except NotFoundError:
                    self._closing = True
                    raise
                except _NETWORK_ERRORS as exc:
                    clean = False
                    reason = str(exc) or type(exc).__name__
                finally:
                    self._ws = None
                    await ws.close()

                if clean or self._closing:
                    break
                await self._wait_before_retry(reason)
        finally:
            # Also reached when the loop dies on an unexpected error
            self._set_state(ConnectionState.CLOSED)

    # ── Internals ─────────────────────────────────────────────

    async def _session(self, ws: WebSocketLike) -> bool:
        """
        Drive one open socket. Returns True on a clean close.

        Connection-level failures surface as exceptions from the
        iteration; ERROR frames end the session as abnormal.
        """
        self._set_state(ConnectionState.OPEN)
        await self._on_open()

        self._consecutive_errors = 0
        self._degraded_reported = False

        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                self._on_frame(msg.data)
            elif msg.type == aiohttp.WSMsgType.BINARY:
                log.warning("Dropped binary frame on %s", self.org_id)
                self._report(IssueKind.DROPPED, "Dropped binary frame", f"{len(msg.data)} bytes")
            elif msg.type == aiohttp.WSMsgType.ERROR:
                log.warning("Stream error on %s: %s", self.org_id, msg.data)
                return False

        return ws.close_code == aiohttp.WSCloseCode.OK

    async def _wait_before_retry(self, reason: str) -> None:
        if self._closing:
            return
        self._set_state(ConnectionState.RECONNECTING)
        self._consecutive_errors += 1
        wait = backoff_delay(
            self._consecutive_errors,
            self.settings.base_backoff,
            self.settings.max_backoff,
        )
        log.warning(
            "Stream for %s lost (%s), reconnecting in %.1fs (attempt %d)",
            self.org_id,
            reason,
            wait,
            self._consecutive_errors,
        )
        if (
            self._consecutive_errors >= self.settings.max_reconnect_failures
            and not self._degraded_reported
        ):
            self._degraded_reported = True
            self._report(
                IssueKind.DEGRADED,
                "Live updates unavailable, serving last known state",
                f"{self._consecutive_errors} consecutive connection failures: {reason}",
            )
        await asyncio.sleep(wait)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        log.debug("Stream %s: %s -> %s", self.org_id, self._state.value, state.value)
        self._state = state
        for listener in list(self._state_listeners):
            try:
                listener(state)
            except Exception:
                log.exception("State listener failed for %s", self.org_id)

    def _report(self, kind: IssueKind, message: str, detail: str = "") -> None:
        if self._on_issue is None:
            return
        try:
            self._on_issue(SyncIssue(kind=kind, org_id=self.org_id, message=message, detail=detail))
        except Exception:
            log.exception("Issue callback failed for %s", self.org_id)
