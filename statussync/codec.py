"""
Wire codec: JSON payloads to models.

Decodes both the REST snapshot bodies and the push-channel frames into
the structured types of ``statussync.models``. The server is not
consistent about field casing (``ID`` / ``Name`` from untagged structs,
``serviceIds`` / ``createdAt`` elsewhere), so every lookup is
case-insensitive and accepts snake_case aliases.

Push frames look like::

    {"event": "SERVICE_UPDATED", "data": {"id": "1", "name": "API", "status": "Outage"}}

Anything that cannot be decoded raises MalformedEventError; the caller
decides whether that drops an event or skips a snapshot item.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from dateutil import parser as dateutil_parser

from statussync.errors import MalformedEventError
from statussync.models import (
    Event,
    Incident,
    IncidentCreated,
    IncidentStatus,
    IncidentUpdate,
    IncidentUpdated,
    Service,
    ServiceStatus,
    ServiceUpdated,
    UpdateAdded,
)

log = logging.getLogger(__name__)

# Push-channel discriminants
SERVICE_UPDATED = "SERVICE_UPDATED"
INCIDENT_CREATED = "INCIDENT_CREATED"
INCIDENT_UPDATED = "INCIDENT_UPDATED"
UPDATE_ADDED = "UPDATE_ADDED"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_SERVICE_STATUSES = {s.value.lower(): s for s in ServiceStatus}
_INCIDENT_STATUSES = {s.value.lower(): s for s in IncidentStatus}


# ─── Helpers ──────────────────────────────────────────────────


def _lowered(obj: Any, what: str) -> Dict[str, Any]:
    if not isinstance(obj, Mapping):
        raise MalformedEventError(f"{what} payload must be an object, got {type(obj).__name__}")
    return {str(k).lower(): v for k, v in obj.items()}


def _get(fields: Dict[str, Any], *names: str) -> Any:
    """First non-None value among the (lowercase) candidate names."""
    for name in names:
        value = fields.get(name)
        if value is not None:
            return value
    return None


def _parse_id(value: Any, what: str) -> str:
    # bool is an int subclass; "true" is never a valid id
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise MalformedEventError(f"{what} id missing or invalid: {value!r}")
    text = str(value).strip()
    if not text:
        raise MalformedEventError(f"{what} id is empty")
    return text


def _parse_text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a timestamp flexibly; naive values are assumed UTC."""
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = dateutil_parser.parse(value)
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_service_status(value: Any) -> ServiceStatus:
    if not isinstance(value, str):
        raise MalformedEventError(f"Service status missing or invalid: {value!r}")
    return _SERVICE_STATUSES.get(value.strip().lower(), ServiceStatus.UNKNOWN)


def _parse_incident_status(value: Any) -> IncidentStatus:
    if isinstance(value, str):
        status = _INCIDENT_STATUSES.get(value.strip().lower())
        if status is not None:
            return status
    raise MalformedEventError(f"Incident status missing or invalid: {value!r}")


# ─── Entities ─────────────────────────────────────────────────


def parse_service(obj: Any) -> Service:
    """
    Decode one service object.

    ``id`` and ``status`` are required; an unrecognized status string
    becomes ``Unknown`` rather than rejecting the payload.
    """
    fields = _lowered(obj, "Service")
    return Service(
        id=_parse_id(fields.get("id"), "Service"),
        name=_parse_text(fields.get("name")),
        status=_parse_service_status(fields.get("status")),
    )


def parse_incident_update(obj: Any) -> IncidentUpdate:
    """Decode one incident progress note."""
    fields = _lowered(obj, "Incident update")
    return IncidentUpdate(
        id=_parse_id(fields.get("id"), "Incident update"),
        message=_parse_text(fields.get("message")),
        created_at=_parse_timestamp(_get(fields, "createdat", "created_at")),
    )


def _affected_ids(fields: Dict[str, Any]) -> Tuple[str, ...]:
    ids: List[str] = []
    services = fields.get("services")
    if isinstance(services, list):
        for svc in services:
            if isinstance(svc, Mapping):
                ids.append(_parse_id(_lowered(svc, "Service").get("id"), "Service"))
            else:
                ids.append(_parse_id(svc, "Service"))
    raw_ids = _get(fields, "affectedserviceids", "affected_service_ids", "serviceids", "service_ids")
    if isinstance(raw_ids, list):
        ids.extend(_parse_id(i, "Service") for i in raw_ids)

    # Preserve first-seen order, drop duplicates
    seen: set = set()
    unique: List[str] = []
    for sid in ids:
        if sid not in seen:
            seen.add(sid)
            unique.append(sid)
    return tuple(unique)


def _parse_updates(raw: Any) -> Tuple[IncidentUpdate, ...]:
    if not isinstance(raw, list):
        return ()
    updates = [parse_incident_update(u) for u in raw]
    updates.sort(key=lambda u: u.created_at or _EPOCH)
    return tuple(updates)


def parse_incident(obj: Any) -> Incident:
    """
    Decode one incident.

    Accepts both the flat public shape (incident fields plus a
    ``services`` array) and the wrapped dashboard shape
    ``{"incident": {...}, "services": [...], "updates": [...]}``.
    """
    outer = _lowered(obj, "Incident")
    inner = outer
    if isinstance(outer.get("incident"), Mapping):
        inner = _lowered(outer["incident"], "Incident")

    affected = _affected_ids(outer) if inner is not outer else ()
    affected = affected + tuple(i for i in _affected_ids(inner) if i not in affected)

    raw_updates = outer.get("updates") if outer.get("updates") is not None else inner.get("updates")

    return Incident(
        id=_parse_id(inner.get("id"), "Incident"),
        title=_parse_text(inner.get("title")),
        description=_parse_text(inner.get("description")),
        status=_parse_incident_status(inner.get("status")),
        affected_service_ids=affected,
        updates=_parse_updates(raw_updates),
        created_at=_parse_timestamp(_get(inner, "createdat", "created_at")),
        updated_at=_parse_timestamp(_get(inner, "updatedat", "updated_at")),
    )


# ─── REST bodies ──────────────────────────────────────────────


def _items(body: Any, key: str) -> Iterable[Any]:
    if isinstance(body, list):
        return body
    if isinstance(body, Mapping):
        items = body.get(key)
        if items is None:
            return []
        if isinstance(items, list):
            return items
    raise MalformedEventError(f"Expected a '{key}' array in response body")


def parse_services_body(body: Any) -> List[Service]:
    """
    Decode a ``{"services": [...]}`` response.

    Items that fail to decode are skipped and logged so one bad row
    never blanks the whole snapshot.
    """
    services: List[Service] = []
    for item in _items(body, "services"):
        try:
            services.append(parse_service(item))
        except MalformedEventError as exc:
            log.warning("Skipping malformed service in snapshot: %s", exc)
    return services


def parse_incidents_body(body: Any) -> List[Incident]:
    """Decode a ``{"incidents": [...]}`` response, skipping bad items."""
    incidents: List[Incident] = []
    for item in _items(body, "incidents"):
        try:
            incidents.append(parse_incident(item))
        except MalformedEventError as exc:
            log.warning("Skipping malformed incident in snapshot: %s", exc)
    return incidents


# ─── Push frames ──────────────────────────────────────────────


def _incident_ref(data: Any) -> str:
    """INCIDENT_UPDATED carries a bare id, or an object we only read the id from."""
    if isinstance(data, Mapping):
        fields = _lowered(data, "Incident")
        if isinstance(fields.get("incident"), Mapping):
            fields = _lowered(fields["incident"], "Incident")
        return _parse_id(_get(fields, "id", "incidentid", "incident_id"), "Incident")
    return _parse_id(data, "Incident")


def _update_added(data: Any) -> UpdateAdded:
    fields = _lowered(data, "Incident update")
    incident_id = _parse_id(_get(fields, "incidentid", "incident_id"), "Incident")
    try:
        update: Optional[IncidentUpdate] = parse_incident_update(data)
    except MalformedEventError:
        update = None
    return UpdateAdded(incident_id=incident_id, update=update)


def decode_event(message: Any) -> Event:
    """
    Turn an already-parsed frame object into an Event variant.

    Raises:
        MalformedEventError: unknown discriminant or undecodable payload.
    """
    if not isinstance(message, Mapping):
        raise MalformedEventError("Frame must be a JSON object")

    kind = message.get("event")
    if not isinstance(kind, str):
        raise MalformedEventError("Frame has no 'event' discriminant")
    if "data" not in message:
        raise MalformedEventError(f"{kind} frame has no 'data' payload")
    data = message["data"]

    if kind == SERVICE_UPDATED:
        return ServiceUpdated(service=parse_service(data))
    if kind == INCIDENT_CREATED:
        return IncidentCreated(incident=parse_incident(data))
    if kind == INCIDENT_UPDATED:
        return IncidentUpdated(incident_id=_incident_ref(data))
    if kind == UPDATE_ADDED:
        return _update_added(data)
    raise MalformedEventError(f"Unknown event type: {kind}")


def decode_frame(raw: Union[str, bytes]) -> Event:
    """Decode a raw text frame from the push channel."""
    try:
        message = json.loads(raw)
    except (TypeError, ValueError, RecursionError) as exc:
        raise MalformedEventError(f"Frame is not valid JSON: {exc}") from exc
    return decode_event(message)
