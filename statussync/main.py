"""
Main entry point: the StatusWatcher orchestrator.

Opens one Subscription per configured organization, all sharing a
single aiohttp session in one asyncio event loop, prints status changes
as they arrive, serves the live views over a small HTTP endpoint, and
handles graceful shutdown on Ctrl+C.

Usage:
    python -m statussync [config.yaml]
    statussync [config.yaml]
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import Dict, List, Optional

import aiohttp
from aiohttp import web

from statussync import notifier, projection
from statussync.backoff import backoff_delay
from statussync.config import load_config
from statussync.connection import aiohttp_connector
from statussync.errors import ConfigurationError, NotFoundError, TransportError
from statussync.fetcher import SnapshotFetcher
from statussync.models import ConnectionState, OrganizationConfig, SyncSettings, View
from statussync.subscription import Subscription

log = logging.getLogger(__name__)


class StatusWatcher:
    """
    Top-level orchestrator.

    Manages the lifecycle of all Subscription instances and the shared
    aiohttp session.
    """

    def __init__(
        self,
        organizations: List[OrganizationConfig],
        settings: SyncSettings,
    ) -> None:
        self.organizations = organizations
        self.settings = settings
        self.subscriptions: Dict[str, Subscription] = {}
        self._tasks: List[asyncio.Task] = []

    async def run(self) -> None:
        """
        Launch all subscriptions concurrently and wait until interrupted.
        """
        notifier.print_banner()

        # One pooled session for every organization
        connector = aiohttp.TCPConnector(limit_per_host=5)
        async with aiohttp.ClientSession(connector=connector) as session:
            for org in self.organizations:
                task = asyncio.create_task(
                    self._watch(session, org),
                    name=f"watch-{org.org_id}",
                )
                self._tasks.append(task)

            try:
                await asyncio.gather(*self._tasks)
            except asyncio.CancelledError:
                pass

    def shutdown(self) -> None:
        """Cancel all running subscription tasks."""
        for task in self._tasks:
            task.cancel()

    def views(self) -> Dict[str, View]:
        return {org_id: sub.get_view() for org_id, sub in self.subscriptions.items()}

    async def _watch(self, session: aiohttp.ClientSession, org: OrganizationConfig) -> None:
        fetcher = SnapshotFetcher(
            session,
            self.settings.api_url,
            timeout=self.settings.request_timeout,
            public=org.public,
            token=org.token,
        )
        subscription = Subscription(
            fetcher,
            aiohttp_connector(session, self.settings),
            self.settings,
            on_issue=notifier.print_issue,
        )
        self.subscriptions[org.org_id] = subscription
        subscription.subscribe(_ChangePrinter(org.org_id))

        def print_state(state: ConnectionState) -> None:
            if state in (ConnectionState.OPEN, ConnectionState.RECONNECTING):
                notifier.print_connection_state(org.org_id, state)

        subscription.add_state_listener(print_state)

        notifier.print_subscribing(org.org_id, f"{self.settings.ws_url}/{org.org_id}")
        try:
            if await self._open_with_retry(subscription, org.org_id):
                # Runs until cancelled; the subscription heals itself
                await asyncio.Event().wait()
        finally:
            await subscription.close()

    async def _open_with_retry(self, subscription: Subscription, org_id: str) -> bool:
        attempt = 0
        while True:
            try:
                await subscription.open(org_id)
                return True
            except NotFoundError as exc:
                notifier.print_error(org_id, exc.message)
                return False
            except TransportError as exc:
                attempt += 1
                wait = backoff_delay(attempt, self.settings.base_backoff, self.settings.max_backoff)
                notifier.print_error(org_id, exc.message)
                notifier.print_retry(org_id, attempt, wait)
                await asyncio.sleep(wait)


class _ChangePrinter:
    """View listener that prints what changed between consecutive views."""

    def __init__(self, org_id: str) -> None:
        self.org_id = org_id
        self._last: View = View()

    def __call__(self, view: View) -> None:
        before, self._last = self._last, view

        for previous, service in projection.service_changes(before, view):
            notifier.print_service_change(self.org_id, service, previous)
        for previous, incident in projection.incident_changes(before, view):
            if incident.is_active or previous is not None:
                notifier.print_incident(self.org_id, incident, is_new=previous is None)

        status = projection.system_status(view.services)
        if not before.initialized or status != projection.system_status(before.services):
            notifier.print_system_status(self.org_id, status)


# ─── Status endpoint ──────────────────────────────────────────


def build_status_app(watcher: StatusWatcher) -> web.Application:
    """HTTP surface exposing the live views for hosted deployments."""

    async def index(_: web.Request) -> web.Response:
        return web.json_response({
            "status": "running",
            "organizations": {
                org_id: {
                    "system_status": projection.system_status(view.services),
                    "stream": watcher.subscriptions[org_id].state.value,
                }
                for org_id, view in watcher.views().items()
            },
        })

    async def health(_: web.Request) -> web.Response:
        return web.json_response({"status": "healthy"})

    async def status(request: web.Request) -> web.Response:
        org_id = request.match_info["org_id"]
        subscription = watcher.subscriptions.get(org_id)
        if subscription is None:
            return web.json_response({"error": f"Unknown organization '{org_id}'"}, status=404)
        body = projection.to_dict(subscription.get_view())
        body["stream"] = subscription.state.value
        return web.json_response(body)

    app = web.Application()
    app.router.add_get("/", index)
    app.router.add_get("/health", health)
    app.router.add_get("/status/{org_id}", status)
    return app


def _handle_signals(watcher: StatusWatcher, loop: asyncio.AbstractEventLoop) -> None:
    """Register signal handlers for graceful shutdown."""
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(
                sig,
                lambda: _do_shutdown(watcher),
            )
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass


def _do_shutdown(watcher: StatusWatcher) -> None:
    """Trigger graceful shutdown."""
    notifier.print_shutdown()
    watcher.shutdown()


async def async_main(config_path: Optional[str] = None) -> None:
    """Async entry point."""
    organizations, settings = load_config(config_path)
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    watcher = StatusWatcher(organizations, settings)

    loop = asyncio.get_running_loop()
    _handle_signals(watcher, loop)

    runner = web.AppRunner(build_status_app(watcher))
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", settings.http_port)
    await site.start()

    try:
        await watcher.run()
    finally:
        await runner.cleanup()


def main() -> None:
    """Sync entry point."""
    config_path = sys.argv[1] if len(sys.argv) > 1 else None
    try:
        asyncio.run(async_main(config_path))
    except ConfigurationError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        sys.exit(2)
    except KeyboardInterrupt:
        # Signal handler already printed shutdown message
        sys.exit(0)


if __name__ == "__main__":
    main()
