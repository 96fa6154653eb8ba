"""
Reconciliation Engine: the single writable store of a subscription.

Merges a REST snapshot with the push-event stream into one View:

  - ServiceUpdated replaces the service by id (last write wins, by
    arrival order; the wire carries no version numbers)
  - IncidentCreated upserts the incident wholesale
  - IncidentUpdated / UpdateAdded only name the incident, so they
    trigger a debounced re-fetch of all incidents
  - Undecodable frames are dropped and reported, never raised

Every mutation builds new mappings and swaps in a fresh immutable View,
so a reader always sees either a fully applied event or none. All
mutating methods are synchronous and run on the event loop, which
serializes them in arrival order; only the re-fetch task awaits.

A per-entity "last-applied" sequence number lets snapshot data be
rejected for entities that events changed after the snapshot request
started.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, TypeVar, Union

from statussync import projection
from statussync.backoff import backoff_delay
from statussync.codec import decode_frame
from statussync.errors import (
    AlreadyInitializedError,
    MalformedEventError,
    NotFoundError,
    NotInitializedError,
    TransportError,
)
from statussync.models import (
    Event,
    Incident,
    IncidentCreated,
    IncidentUpdated,
    IssueKind,
    Service,
    ServiceUpdated,
    Snapshot,
    SyncIssue,
    SyncSettings,
    UpdateAdded,
    View,
)

log = logging.getLogger(__name__)

IncidentLoader = Callable[[], Awaitable[Sequence[Incident]]]
IssueCallback = Callable[[SyncIssue], None]
ViewListener = Callable[[View], None]

T = TypeVar("T", Service, Incident)


class ReconciliationEngine:
    """
    Owns the View State for one organization subscription.

    Attributes:
        org_id: Organization whose state this engine holds.
        settings: Debounce and retry tuning.
        degraded: True while incident data is known to be stale after
            repeated re-fetch failures.
    """

    def __init__(
        self,
        org_id: str,
        load_incidents: IncidentLoader,
        settings: Optional[SyncSettings] = None,
        on_issue: Optional[IssueCallback] = None,
    ) -> None:
        self.org_id = org_id
        self.settings = settings or SyncSettings()
        self.degraded = False

        self._load_incidents = load_incidents
        self._on_issue = on_issue
        self._view = View()
        self._listeners: List[ViewListener] = []

        # Stale-data rejection: global sequence + last-applied per entity
        self._seq = 0
        self._applied: Dict[str, int] = {}
        # Mark of the fetch that last replaced the incident mapping
        self._incidents_since = 0

        # Debounced incident re-fetch
        self._refetch_task: Optional[asyncio.Task] = None
        self._coalesced = 0

        self._closed = False

    # ── Lifecycle ─────────────────────────────────────────────

    def initialize(self, snapshot: Snapshot) -> None:
        """Seed the View State from the first snapshot of the subscription."""
        if self._view.initialized:
            raise AlreadyInitializedError(
                f"Engine for '{self.org_id}' is already initialized"
            )
        services = {s.id: s for s in snapshot.services}
        incidents = {i.id: i for i in snapshot.incidents}
        self._publish(services, incidents)
        log.info(
            "Initialized %s with %d service(s), %d incident(s)",
            self.org_id,
            len(services),
            len(incidents),
        )

    def mark(self) -> int:
        """
        Start a fetch; pass the returned mark to ``resync`` once the
        snapshot returns.

        Every mark is unique, so fetches started later always carry a
        larger mark than earlier ones.
        """
        self._seq += 1
        return self._seq

    def resync(self, snapshot: Snapshot, since: int) -> None:
        """
        Replace the View State with a fresher snapshot.

        Entities changed by an event after ``since`` (see ``mark``) keep
        their current value; everything else, including removals, follows
        the snapshot. Incidents are left alone when a re-fetch that
        started after this snapshot has already been applied.
        """
        self._require_initialized()
        if self._closed:
            return
        services = self._merge(
            self._view.services, {s.id: s for s in snapshot.services}, since, "service"
        )
        if since > self._incidents_since:
            incidents = self._merge(
                self._view.incidents, {i.id: i for i in snapshot.incidents}, since, "incident"
            )
            self._incidents_since = since
        else:
            log.debug("Keeping newer re-fetched incidents for %s", self.org_id)
            incidents = dict(self._view.incidents)
        self._publish(services, incidents)
        log.info("Resynced %s from snapshot", self.org_id)

    async def close(self) -> None:
        """Stop accepting changes and discard any in-flight re-fetch."""
        self._closed = True
        task, self._refetch_task = self._refetch_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    @property
    def closed(self) -> bool:
        return self._closed

    # ── Event intake ──────────────────────────────────────────

    def apply_frame(self, raw: Union[str, bytes]) -> bool:
        """
        Decode and apply one push frame.

        Returns False when the frame was dropped. Malformed frames are
        reported to the observability callback and never raise.
        """
        try:
            event = decode_frame(raw)
        except MalformedEventError as exc:
            log.warning("Dropped malformed frame for %s: %s", self.org_id, exc)
            self._report(IssueKind.DROPPED, "Dropped malformed event", exc.message)
            return False
        return self.apply_event(event)

    def apply_event(self, event: Event) -> bool:
        """Merge one decoded event into the View State."""
        self._require_initialized()
        if self._closed:
            log.debug("Ignoring %s for closed engine %s", type(event).__name__, self.org_id)
            return False

        if isinstance(event, ServiceUpdated):
            services = dict(self._view.services)
            services[event.service.id] = event.service
            self._touch("service", event.service.id)
            self._publish(services, self._view.incidents)
            return True

        if isinstance(event, IncidentCreated):
            incidents = dict(self._view.incidents)
            incidents[event.incident.id] = event.incident
            self._touch("incident", event.incident.id)
            self._publish(self._view.services, incidents)
            return True

        if isinstance(event, UpdateAdded) and event.update is not None:
            log.info(
                "New update on incident %s for %s: %s",
                event.incident_id,
                self.org_id,
                event.update.message,
            )

        if isinstance(event, (IncidentUpdated, UpdateAdded)):
            self._schedule_refetch(event.incident_id)
            return True

        log.warning("Dropped unsupported event %r for %s", event, self.org_id)
        self._report(IssueKind.DROPPED, "Dropped unsupported event", type(event).__name__)
        return False

    # ── Reads ─────────────────────────────────────────────────

    def get_view(self) -> View:
        return self._view

    def get_system_status(self) -> str:
        return projection.system_status(self._view.services)

    def subscribe(self, listener: ViewListener) -> Callable[[], None]:
        """
        Register a listener called with every newly published View.

        Returns a function that removes the listener again.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @property
    def refetch_pending(self) -> bool:
        return self._refetch_task is not None and not self._refetch_task.done()

    @property
    def coalesced_triggers(self) -> int:
        """Re-fetch triggers folded into the current or last re-fetch."""
        return self._coalesced

    # ── Debounced incident re-fetch ───────────────────────────

    def _schedule_refetch(self, incident_id: str) -> None:
        if self.refetch_pending:
            self._coalesced += 1
            log.debug(
                "Re-fetch for %s already pending, coalesced trigger from incident %s",
                self.org_id,
                incident_id,
            )
            return
        self._coalesced = 0
        self._refetch_task = asyncio.get_running_loop().create_task(
            self._refetch(),
            name=f"refetch-{self.org_id}",
        )

    async def _refetch(self) -> None:
        await asyncio.sleep(self.settings.debounce_seconds)

        failures = 0
        while not self._closed:
            since = self.mark()
            try:
                incidents = await self._load_incidents()
            except NotFoundError as exc:
                log.error("Incident re-fetch for %s failed: %s", self.org_id, exc)
                self._report(IssueKind.FATAL, "Organization no longer exists", exc.message)
                return
            except TransportError as exc:
                failures += 1
                if failures >= self.settings.max_refetch_failures:
                    self.degraded = True
                    log.error(
                        "Incident re-fetch for %s gave up after %d attempt(s): %s",
                        self.org_id,
                        failures,
                        exc,
                    )
                    self._report(
                        IssueKind.DEGRADED,
                        "Incident data may be stale",
                        f"{failures} consecutive re-fetch failures: {exc.message}",
                    )
                    return
                wait = backoff_delay(failures, self.settings.base_backoff, self.settings.max_backoff)
                log.warning(
                    "Incident re-fetch for %s failed (%s), retrying in %.1fs",
                    self.org_id,
                    exc,
                    wait,
                )
                await asyncio.sleep(wait)
                continue

            if self._closed:
                return
            if since < self._incidents_since:
                # A resync started after this fetch already replaced the
                # incidents; triggers folded in since then still need a fetch.
                log.debug("Discarding superseded re-fetch for %s, fetching again", self.org_id)
                continue
            self.degraded = False
            self._incidents_since = since
            fresh = {i.id: i for i in incidents}
            merged = self._merge(self._view.incidents, fresh, since, "incident")
            self._publish(self._view.services, merged)
            log.debug("Re-fetched %d incident(s) for %s", len(merged), self.org_id)
            return

    # ── Internals ─────────────────────────────────────────────

    def _require_initialized(self) -> None:
        if not self._view.initialized:
            raise NotInitializedError(
                f"Engine for '{self.org_id}' has not been initialized"
            )

    def _touch(self, kind: str, entity_id: str) -> None:
        self._seq += 1
        self._applied[f"{kind}:{entity_id}"] = self._seq

    def _merge(
        self,
        current: Mapping[str, T],
        fresh: Dict[str, T],
        since: int,
        kind: str,
    ) -> Dict[str, T]:
        merged = dict(fresh)
        for entity_id, entity in current.items():
            if self._applied.get(f"{kind}:{entity_id}", 0) > since:
                merged[entity_id] = entity

        # Forget markers of entities that are gone
        prefix = f"{kind}:"
        for key in [k for k in self._applied if k.startswith(prefix)]:
            if key[len(prefix):] not in merged:
                del self._applied[key]
        return merged

    def _publish(
        self,
        services: Mapping[str, Service],
        incidents: Mapping[str, Incident],
    ) -> None:
        self._view = View.build(services, incidents, version=self._view.version + 1)
        view = self._view
        for listener in list(self._listeners):
            try:
                listener(view)
            except Exception:
                log.exception("View listener failed for %s", self.org_id)

    def _report(self, kind: IssueKind, message: str, detail: str = "") -> None:
        if self._on_issue is None:
            return
        try:
            self._on_issue(SyncIssue(kind=kind, org_id=self.org_id, message=message, detail=detail))
        except Exception:
            log.exception("Issue callback failed for %s", self.org_id)
