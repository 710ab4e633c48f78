"""
Health check for the sync service.

Three dependencies are checked: database, OAuth token file and the sync
queue. Each produces a list of named checks; a dependency takes the worst
status of its checks and the service takes the worst of its dependencies.
"""

import json
import logging
import os
import time
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from feedsync.models.sync_queue import QueueEntry
from feedsync.services.clock import Clock
from feedsync.services.sync_orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)

HEALTHY = "healthy"
DEGRADED = "degraded"
UNHEALTHY = "unhealthy"
UNKNOWN = "unknown"

DB_SLOW_MS = 300
DB_VERY_SLOW_MS = 1000

TOKEN_LIFETIME_DAYS = 365
TOKEN_WARNING_DAYS = 30

FAILED_UNHEALTHY = 50
FAILED_DEGRADED = 10
PENDING_DEGRADED = 100


def worst_status(statuses) -> str:
    statuses = list(statuses)
    for status in (UNHEALTHY, DEGRADED, UNKNOWN):
        if status in statuses:
            return status
    return HEALTHY


def _check(name: str, status: str, message: str, **extra) -> dict:
    return {"name": name, "status": status, "message": message, **extra}


def _dependency(name: str, checks: list[dict], **extra) -> dict:
    status = worst_status(c["status"] for c in checks)
    return {"name": name, "status": status, "checks": checks, **extra}


class SyncHealthCheck:
    """Reports database, credential and queue health."""

    def __init__(
        self,
        session_factory: sessionmaker,
        tokens_path: str,
        orchestrator: SyncOrchestrator,
        clock: Clock | None = None,
    ):
        self.session_factory = session_factory
        self.tokens_path = tokens_path
        self.orchestrator = orchestrator
        self.clock = clock or Clock()
        self.started_at = time.monotonic()

    def check(self) -> dict:
        database = self.check_database()
        oauth = self.check_oauth_tokens()
        queue = self.check_sync_queue()

        dependencies = {
            "database": database["status"],
            "oauth": oauth["status"],
            "sync_queue": queue["status"],
        }
        status = worst_status(dependencies.values())
        if status != HEALTHY:
            logger.warning("Health check %s: %s", status, dependencies)

        last_processed = self.orchestrator.last_processed_time
        return {
            "status": status,
            "service": "feedsync",
            "uptime_seconds": int(time.monotonic() - self.started_at),
            "last_activity": last_processed.isoformat() if last_processed else None,
            "last_error": self.orchestrator.last_error,
            "dependencies": dependencies,
            "details": [database, oauth, queue],
        }

    def check_database(self) -> dict:
        checks = []
        start = time.monotonic()
        try:
            with self.session_factory() as db:
                db.execute(select(QueueEntry.id).limit(1)).all()
        except SQLAlchemyError as e:
            checks.append(_check("connectivity", UNHEALTHY, "Database connection failed", error=str(e)))
            return _dependency("database", checks)

        duration = int((time.monotonic() - start) * 1000)
        checks.append(_check("connectivity", HEALTHY, "Database connection successful", duration_ms=duration))

        if duration > DB_VERY_SLOW_MS:
            checks.append(_check("performance", UNHEALTHY, f"Database response very slow: {duration}ms"))
        elif duration > DB_SLOW_MS:
            checks.append(_check("performance", DEGRADED, f"Database response slow: {duration}ms"))
        else:
            checks.append(_check("performance", HEALTHY, f"Database response time: {duration}ms"))

        return _dependency("database", checks)

    def check_oauth_tokens(self) -> dict:
        """
        Inspect the token file without decrypting it.

        The remaining lifetime is approximated from the file's mtime, since
        the refresh token's real expiry is not exposed.
        """
        checks = []

        if not os.path.exists(self.tokens_path):
            checks.append(_check("token-file", UNHEALTHY, "OAuth token file not found"))
            return _dependency("oauth", checks)

        try:
            with open(self.tokens_path, encoding="utf-8") as f:
                payload = json.load(f)
            modified = os.stat(self.tokens_path).st_mtime
        except (OSError, ValueError) as e:
            checks.append(_check("token-file", UNHEALTHY, "OAuth token file unreadable", error=str(e)))
            return _dependency("oauth", checks)

        if not isinstance(payload, dict) or not payload.get("encrypted"):
            checks.append(_check("token-file", UNHEALTHY, "OAuth tokens not properly encrypted"))
            return _dependency("oauth", checks)

        days_old = int(max(0, self.clock.timestamp() - modified) // 86400)
        days_remaining = max(0, TOKEN_LIFETIME_DAYS - days_old)

        if days_remaining < TOKEN_WARNING_DAYS:
            checks.append(_check(
                "token-validity", DEGRADED,
                f"OAuth tokens may be expiring soon (approx {days_remaining} days left)",
            ))
        else:
            checks.append(_check(
                "token-validity", HEALTHY,
                f"OAuth tokens valid (approx {days_remaining} days remaining)",
            ))

        return _dependency("oauth", checks, days_remaining=days_remaining)

    def check_sync_queue(self) -> dict:
        checks = []
        stats: Optional[dict] = self.orchestrator.get_queue_stats()

        if stats is None:
            checks.append(_check("queue-health", UNKNOWN, "Unable to retrieve sync queue statistics"))
            return _dependency("sync_queue", checks)

        pending = stats["pending"]
        failed = stats["failed"]

        if failed > FAILED_UNHEALTHY:
            checks.append(_check("queue-health", UNHEALTHY, f"High number of failed sync items: {failed}"))
        elif pending > PENDING_DEGRADED or failed > FAILED_DEGRADED:
            checks.append(_check(
                "queue-health", DEGRADED,
                f"Sync queue backlog: {pending} pending, {failed} failed",
            ))
        else:
            checks.append(_check("queue-health", HEALTHY, f"Sync queue healthy: {pending} pending"))

        if self.orchestrator.is_running:
            checks.append(_check("sync-status", HEALTHY, "Periodic sync is active"))
        else:
            checks.append(_check("sync-status", DEGRADED, "Periodic sync is inactive"))

        return _dependency("sync_queue", checks, metadata=stats)
