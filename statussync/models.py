"""
Data models for the synchronization engine.

Entities (services, incidents) are frozen dataclasses so a published
View can be handed to any number of readers without copying. Push
events form a closed tagged union: each variant is its own class and
the engine dispatches on the type.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional, Tuple, Union


class ServiceStatus(str, Enum):
    OPERATIONAL = "Operational"
    DEGRADED = "Degraded"
    OUTAGE = "Outage"
    UNKNOWN = "Unknown"


class IncidentStatus(str, Enum):
    INVESTIGATING = "Investigating"
    IDENTIFIED = "Identified"
    MONITORING = "Monitoring"
    RESOLVED = "Resolved"


class ConnectionState(str, Enum):
    """Lifecycle of the push channel."""

    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    RECONNECTING = "reconnecting"


@dataclass(frozen=True)
class Service:
    """A monitored service. Identity is ``id``, stable across updates."""

    id: str
    name: str
    status: ServiceStatus = ServiceStatus.UNKNOWN


@dataclass(frozen=True)
class IncidentUpdate:
    """A single progress note appended to an incident."""

    id: str
    message: str
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class Incident:
    """
    An incident affecting one or more services.

    Attributes:
        id: Server-assigned identifier.
        title: Short human-readable title.
        description: Longer free-form description.
        status: Investigating, Identified, Monitoring or Resolved.
        affected_service_ids: Ids of the services this incident touches.
        updates: Progress notes, oldest first.
        created_at: When the incident was opened, if the server sent it.
        updated_at: When the incident last changed, if the server sent it.
    """

    id: str
    title: str
    status: IncidentStatus
    description: str = ""
    affected_service_ids: Tuple[str, ...] = ()
    updates: Tuple[IncidentUpdate, ...] = ()
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status is not IncidentStatus.RESOLVED

    @property
    def latest_update(self) -> Optional[IncidentUpdate]:
        return self.updates[-1] if self.updates else None


@dataclass(frozen=True)
class Snapshot:
    """Point-in-time full state of an organization, as fetched over REST."""

    services: Tuple[Service, ...] = ()
    incidents: Tuple[Incident, ...] = ()


# ─── Push events ──────────────────────────────────────────────


@dataclass(frozen=True)
class ServiceUpdated:
    """Carries the full new state of a service."""

    service: Service


@dataclass(frozen=True)
class IncidentCreated:
    """Carries the full state of a newly opened incident."""

    incident: Incident


@dataclass(frozen=True)
class IncidentUpdated:
    """Carries only the incident id; the payload must be re-fetched."""

    incident_id: str


@dataclass(frozen=True)
class UpdateAdded:
    """A progress note was appended to an incident; logged, then re-fetched."""

    incident_id: str
    update: Optional[IncidentUpdate] = None


Event = Union[ServiceUpdated, IncidentCreated, IncidentUpdated, UpdateAdded]


# ─── View ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class View:
    """
    Immutable snapshot of the View State handed to readers.

    The mappings are read-only proxies over private dicts that are never
    mutated after construction; the engine swaps in a new View on every
    successful change.
    """

    services: Mapping[str, Service] = field(default_factory=lambda: MappingProxyType({}))
    incidents: Mapping[str, Incident] = field(default_factory=lambda: MappingProxyType({}))
    version: int = 0
    initialized: bool = False

    @classmethod
    def build(
        cls,
        services: Mapping[str, Service],
        incidents: Mapping[str, Incident],
        version: int,
        initialized: bool = True,
    ) -> "View":
        return cls(
            services=MappingProxyType(dict(services)),
            incidents=MappingProxyType(dict(incidents)),
            version=version,
            initialized=initialized,
        )


# ─── Observability ────────────────────────────────────────────


class IssueKind(str, Enum):
    DROPPED = "dropped"
    DEGRADED = "degraded"
    FATAL = "fatal"


@dataclass(frozen=True)
class SyncIssue:
    """Reported to the observability callback; never raised."""

    kind: IssueKind
    org_id: str
    message: str
    detail: str = ""


# ─── Configuration ────────────────────────────────────────────


@dataclass
class OrganizationConfig:
    """Which organization to follow and how to authenticate."""

    org_id: str
    public: bool = True
    token: Optional[str] = None


@dataclass
class SyncSettings:
    """Global synchronization settings."""

    api_url: str = "http://localhost:8080/api"
    ws_url: str = "ws://localhost:8080/api/ws"
    log_level: str = "INFO"
    request_timeout: float = 10.0
    connect_timeout: float = 10.0
    heartbeat_seconds: float = 30.0
    base_backoff: float = 1.0
    max_backoff: float = 30.0
    debounce_seconds: float = 0.5
    max_refetch_failures: int = 5
    max_reconnect_failures: int = 5
    http_port: int = 10000
