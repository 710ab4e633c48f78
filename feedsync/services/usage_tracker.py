"""
API usage and rate-limit tracking.

The remote reports two independent quota zones in response headers:
zone 1 covers read calls, zone 2 covers write calls. We keep one row per
(service, day) holding our own call count plus whatever the headers said.

Fields a response did not report are never overwritten with defaults.
"""

import logging
import re
from dataclasses import dataclass
from datetime import date
from typing import Any, Mapping, Optional

from feedsync.models.api_usage import ZONE_FIELDS
from feedsync.services.clock import Clock
from feedsync.services.db_service import UsageStore

logger = logging.getLogger(__name__)

RATE_LIMIT_HEADERS = {
    "zone1_usage": "X-Reader-Zone1-Usage",
    "zone1_limit": "X-Reader-Zone1-Limit",
    "zone2_usage": "X-Reader-Zone2-Usage",
    "zone2_limit": "X-Reader-Zone2-Limit",
    "reset_after": "X-Reader-Limits-Reset-After",
}

# Shown when the remote has not reported limits yet today
DEFAULT_ZONE1_LIMIT = 10000
DEFAULT_ZONE2_LIMIT = 2000
DEFAULT_RESET_AFTER = 86400

DISCREPANCY_WARNING_PERCENT = 20

_FRACTION = re.compile(r"\.\d+$")


@dataclass
class TrackResult:
    """Outcome of a usage write; track() reports errors here instead of raising."""
    success: bool
    data: Optional[dict[str, Any]] = None
    error: Optional[str] = None


def parse_header_number(raw: Optional[str]) -> Optional[int]:
    """
    Parse a rate-limit header value.

    Thousands separators and fractional seconds are dropped:
    "1,234" -> 1234, "3600.25" -> 3600.
    """
    if raw is None:
        return None
    text = _FRACTION.sub("", raw.strip().replace(",", ""))
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        logger.warning("Ignoring unparseable rate-limit header value %r", raw)
        return None


class UsageTracker:
    """Records outbound calls and remote-reported quota per service/day."""

    def __init__(self, store: UsageStore, clock: Clock | None = None):
        self.store = store
        self.clock = clock or Clock()

    def track(
        self,
        service: str,
        day: date | None = None,
        *,
        increment: int | None = None,
        zone1_usage: int | None = None,
        zone1_limit: int | None = None,
        zone2_usage: int | None = None,
        zone2_limit: int | None = None,
        reset_after: int | None = None,
    ) -> TrackResult:
        """
        Record usage for one service and day.

        With any zone field: merge just those fields into the day's row
        (count only moves when increment is given). Without zone fields:
        bump the call counter by increment (default 1).
        """
        zone_fields = {
            name: value
            for name, value in (
                ("zone1_usage", zone1_usage),
                ("zone1_limit", zone1_limit),
                ("zone2_usage", zone2_usage),
                ("zone2_limit", zone2_limit),
                ("reset_after", reset_after),
            )
            if value is not None
        }

        try:
            day = day or self.clock.now().date()
            if zone_fields:
                row = self._write(service, day, zone_fields, increment or 0)
            else:
                row = self._write(service, day, {}, 1 if increment is None else increment)
            return TrackResult(success=True, data=row.to_dict())
        except Exception as e:
            # Usage tracking must never break a sync cycle
            logger.error("Failed to track %s usage: %s", service, e)
            return TrackResult(success=False, error=str(e))

    def _write(self, service: str, day: date, fields: dict, increment: int):
        if self.store.supports_upsert:
            return self.store.upsert(service, day, fields, increment)

        # Read-then-write fallback: only safe with a single writer
        existing = self.store.get(service, day)
        if existing is None:
            return self.store.insert(service, day, {**fields, "count": increment})

        changes = dict(fields)
        if increment:
            changes["count"] = (existing.count or 0) + increment
        return self.store.update(existing.id, changes)

    def capture_headers(self, service: str, headers: Mapping[str, str]) -> Optional[TrackResult]:
        """
        Store the rate-limit headers of one response.

        Returns None when the response carried no zone headers (it did not
        come from the rate-limited API surface).
        """
        lowered = {name.lower(): value for name, value in headers.items()}
        raw = {
            name: lowered.get(header.lower())
            for name, header in RATE_LIMIT_HEADERS.items()
        }

        parsed = {name: parse_header_number(value) for name, value in raw.items()}
        if all(parsed[name] is None for name in ZONE_FIELDS if name != "reset_after"):
            return None

        result = self.track(service, **parsed)

        if result.success:
            logger.info(
                "Rate limits for %s: zone1 %s, zone2 %s, reset in %ss",
                service,
                _format_zone(parsed["zone1_usage"], parsed["zone1_limit"]),
                _format_zone(parsed["zone2_usage"], parsed["zone2_limit"]),
                parsed["reset_after"] if parsed["reset_after"] is not None else "?",
            )
        return result

    def get_current_usage(self, service: str) -> dict:
        """Today's usage with defaults filled in for display."""
        today = self.clock.now().date()
        empty = {
            "date": today.isoformat(),
            "count": 0,
            "zone1": {"used": 0, "limit": DEFAULT_ZONE1_LIMIT, "percentage": 0.0},
            "zone2": {"used": 0, "limit": DEFAULT_ZONE2_LIMIT, "percentage": 0.0},
            "reset_after_seconds": DEFAULT_RESET_AFTER,
            "last_updated": None,
        }

        row = self.store.get(service, today)
        if row is None:
            return empty

        zone1_used = row.zone1_usage or 0
        zone2_used = row.zone2_usage or 0
        count = row.count or 0

        # Headers are authoritative; a big gap means calls we did not count
        if row.zone1_usage is not None and count > 0:
            base = row.zone1_usage or count
            gap = abs(row.zone1_usage - count) / base * 100
            if gap > DISCREPANCY_WARNING_PERCENT:
                logger.warning(
                    "Zone 1 usage %s differs from local count %s by %d%%",
                    row.zone1_usage, count, round(gap),
                )

        return {
            "date": today.isoformat(),
            "count": count,
            "zone1": {
                "used": zone1_used,
                "limit": row.zone1_limit or DEFAULT_ZONE1_LIMIT,
                "percentage": _percentage(zone1_used, row.zone1_limit),
            },
            "zone2": {
                "used": zone2_used,
                "limit": row.zone2_limit or DEFAULT_ZONE2_LIMIT,
                "percentage": _percentage(zone2_used, row.zone2_limit),
            },
            "reset_after_seconds": row.reset_after or DEFAULT_RESET_AFTER,
            "last_updated": row.updated_at.isoformat() if row.updated_at else None,
        }


def _percentage(used: int, limit: Optional[int]) -> float:
    if not limit or limit <= 0:
        return 0.0
    return round(used / limit * 100, 1)


def _format_zone(usage: Optional[int], limit: Optional[int]) -> str:
    if usage is None and limit is None:
        return "not reported"
    if usage is not None and limit:
        return f"{usage}/{limit} ({usage / limit * 100:.1f}%)"
    return f"{usage if usage is not None else '?'}/{limit if limit is not None else '?'}"
