"""
Console Notifier: status changes, sync issues and lifecycle messages.

Formats status changes, incidents and sync issues into timestamped
console lines, with ANSI colors for readability.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from statussync.models import (
    ConnectionState,
    Incident,
    IssueKind,
    Service,
    ServiceStatus,
    SyncIssue,
)
from statussync.projection import ALL_OPERATIONAL, MAJOR_OUTAGE, PARTIAL_OUTAGE

# ANSI color codes for terminal styling
_RESET = "\033[0m"
_BOLD = "\033[1m"
_DIM = "\033[2m"
_RED = "\033[91m"
_GREEN = "\033[92m"
_YELLOW = "\033[93m"
_BLUE = "\033[94m"
_MAGENTA = "\033[95m"
_CYAN = "\033[96m"
_WHITE = "\033[97m"
_GRAY = "\033[90m"

_SERVICE_COLORS = {
    ServiceStatus.OPERATIONAL: _GREEN,
    ServiceStatus.DEGRADED: _YELLOW,
    ServiceStatus.OUTAGE: _RED,
}

_SYSTEM_COLORS = {
    ALL_OPERATIONAL: _GREEN,
    PARTIAL_OUTAGE: _YELLOW,
    MAJOR_OUTAGE: _RED,
}


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _incident_color(status: str) -> str:
    """Pick a color based on incident status."""
    s = status.lower()
    if "resolved" in s:
        return _GREEN
    elif "monitoring" in s:
        return _CYAN
    elif "identified" in s:
        return _YELLOW
    elif "investigating" in s:
        return _RED
    else:
        return _MAGENTA


def print_banner() -> None:
    """Print the startup banner."""
    banner = f"""
{_BOLD}{_CYAN}+------------------------------------------------------------------+
|          statussync -- Live Status Watcher                       |
|          Snapshot * Push stream * Self-healing                   |
+------------------------------------------------------------------+{_RESET}
"""
    print(banner)


def print_subscribing(org_id: str, url: str) -> None:
    """Print a message when a subscription starts."""
    print(
        f"  {_BOLD}{_BLUE}> Watching:{_RESET} {_WHITE}{org_id}{_RESET}"
        f"  {_DIM}({url}){_RESET}"
    )


def print_system_status(org_id: str, status: str) -> None:
    """Print the aggregate status line of an organization."""
    color = _SYSTEM_COLORS.get(status, _MAGENTA)
    print(f"  {_GRAY}[{_now()}]{_RESET} {_BOLD}{org_id}:{_RESET} {_BOLD}{color}{status}{_RESET}")


def print_service_change(org_id: str, service: Service, previous: Optional[Service]) -> None:
    """Print one service whose status appeared or changed."""
    color = _SERVICE_COLORS.get(service.status, _MAGENTA)
    was = f" {_DIM}(was {previous.status.value}){_RESET}" if previous else ""
    print(
        f"  {_GRAY}[{_now()}]{_RESET} {org_id} / {_BOLD}{service.name or service.id}{_RESET}: "
        f"{color}{service.status.value}{_RESET}{was}"
    )


def print_incident(org_id: str, incident: Incident, is_new: bool = True) -> None:
    """Print a single incident with its latest update."""
    color = _incident_color(incident.status.value)
    tag = "NEW INCIDENT" if is_new else "INCIDENT UPDATE"

    print()
    print(f"  {_GRAY}[{_now()}]{_RESET} {_BOLD}{color}{tag}{_RESET}")
    print(f"    {_BOLD}Org      :{_RESET} {org_id}")
    print(f"    {_BOLD}Title    :{_RESET} {incident.title}")
    print(f"    {_BOLD}Status   :{_RESET} {color}{incident.status.value}{_RESET}")

    latest = incident.latest_update
    if latest is not None and latest.message:
        message = latest.message[:200] + "..." if len(latest.message) > 200 else latest.message
        print(f"    {_BOLD}Latest   :{_RESET} {_DIM}{message}{_RESET}")

    print()


def print_connection_state(org_id: str, state: ConnectionState) -> None:
    """Print a subtle line on stream state transitions."""
    color = _GREEN if state is ConnectionState.OPEN else _DIM
    print(f"  {_DIM}[{_now()}] {org_id}: stream{_RESET} {color}{state.value}{_RESET}")


def print_issue(issue: SyncIssue) -> None:
    """Print a dropped-event, degraded-data or fatal notice."""
    color = _RED if issue.kind is IssueKind.FATAL else _YELLOW
    detail = f" {_DIM}({issue.detail}){_RESET}" if issue.detail else ""
    print(
        f"  {_GRAY}[{_now()}]{_RESET} {color}{issue.kind.value.upper()}{_RESET} "
        f"{_BOLD}{issue.org_id}:{_RESET} {issue.message}{detail}"
    )


def print_error(org_id: str, message: str) -> None:
    """Print an error message."""
    print(
        f"  {_GRAY}[{_now()}]{_RESET} {_RED}ERROR{_RESET} "
        f"{_BOLD}{org_id}:{_RESET} {message}"
    )


def print_retry(org_id: str, attempt: int, wait: float) -> None:
    """Print a retry message with backoff info."""
    print(
        f"  {_DIM}{org_id}: Retrying in {wait:.1f}s "
        f"(attempt {attempt})...{_RESET}"
    )


def print_shutdown() -> None:
    """Print shutdown message."""
    print(f"\n{_BOLD}{_CYAN}Watcher stopped. Goodbye!{_RESET}\n")
