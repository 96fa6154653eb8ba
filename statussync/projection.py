"""
View Projection: pure, stateless transforms over a View.

Nothing here is cached: every value is recomputed from the View it is
given, so derived data can never go stale relative to the store.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from statussync.models import (
    Incident,
    IncidentStatus,
    Service,
    ServiceStatus,
    View,
)

MAJOR_OUTAGE = "Major Outage"
PARTIAL_OUTAGE = "Partial Outage"
ALL_OPERATIONAL = "All Systems Operational"

UNKNOWN_SERVICE_NAME = "Unknown service"

_STATUS_ORDER = [
    IncidentStatus.INVESTIGATING,
    IncidentStatus.IDENTIFIED,
    IncidentStatus.MONITORING,
    IncidentStatus.RESOLVED,
]

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def status_counts(services: Mapping[str, Service]) -> Dict[ServiceStatus, int]:
    """Number of services in each status; every status is present."""
    counts = Counter(s.status for s in services.values())
    return {status: counts.get(status, 0) for status in ServiceStatus}


def system_status(services: Mapping[str, Service]) -> str:
    """
    Aggregate health of an organization.

    Any Outage wins, then any Degraded; Unknown counts as neither.
    """
    counts = status_counts(services)
    if counts[ServiceStatus.OUTAGE]:
        return MAJOR_OUTAGE
    if counts[ServiceStatus.DEGRADED]:
        return PARTIAL_OUTAGE
    return ALL_OPERATIONAL


def sorted_services(view: View) -> List[Service]:
    return sorted(view.services.values(), key=lambda s: (s.name.lower(), s.id))


def sorted_incidents(view: View) -> List[Incident]:
    """Newest first; incidents without a timestamp sort last, then by title."""
    by_title = sorted(view.incidents.values(), key=lambda i: (i.title.lower(), i.id))
    return sorted(by_title, key=lambda i: i.created_at or _EPOCH, reverse=True)


def active_incidents(view: View) -> List[Incident]:
    return [i for i in sorted_incidents(view) if i.is_active]


def group_incidents_by_status(view: View) -> Dict[IncidentStatus, List[Incident]]:
    """Incidents bucketed by status, buckets in lifecycle order."""
    groups: Dict[IncidentStatus, List[Incident]] = {status: [] for status in _STATUS_ORDER}
    for incident in sorted_incidents(view):
        groups[incident.status].append(incident)
    return groups


def unknown_service(service_id: str) -> Service:
    """Placeholder for an id that the View does not (or no longer) contain."""
    return Service(id=service_id, name=UNKNOWN_SERVICE_NAME, status=ServiceStatus.UNKNOWN)


def affected_services(view: View, incident: Incident) -> List[Service]:
    """Resolve an incident's service ids, substituting placeholders for absent ones."""
    return [
        view.services.get(sid) or unknown_service(sid)
        for sid in incident.affected_service_ids
    ]


def service_changes(before: View, after: View) -> List[Tuple[Optional[Service], Service]]:
    """(previous, current) for every service that is new or changed status."""
    changes = []
    for service in sorted_services(after):
        previous = before.services.get(service.id)
        if previous is None or previous.status is not service.status:
            changes.append((previous, service))
    return changes


def incident_changes(before: View, after: View) -> List[Tuple[Optional[Incident], Incident]]:
    """(previous, current) for every incident that is new or differs at all."""
    changes = []
    for incident in sorted_incidents(after):
        previous = before.incidents.get(incident.id)
        if previous != incident:
            changes.append((previous, incident))
    return changes


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def to_dict(view: View) -> Dict[str, Any]:
    """JSON-ready summary used by the watcher's status endpoint."""
    return {
        "system_status": system_status(view.services),
        "version": view.version,
        "services": [
            {"id": s.id, "name": s.name, "status": s.status.value}
            for s in sorted_services(view)
        ],
        "incidents": [
            {
                "id": i.id,
                "title": i.title,
                "status": i.status.value,
                "created_at": _iso(i.created_at),
                "services": [s.name for s in affected_services(view, i)],
                "updates": len(i.updates),
                "latest_update": i.latest_update.message if i.latest_update else None,
            }
            for i in active_incidents(view)
        ],
    }
