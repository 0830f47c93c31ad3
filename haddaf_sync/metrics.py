"""
Sync core metrics with Prometheus text exposition.

Most failures in the core are absorbed rather than raised: a stale
delivery is dropped, a malformed document is skipped, a failing
recipient is reported as ``failed``. Each of those bumps a counter here,
and ``absorbed_errors`` rolls them up per area for the health endpoint.
"""

from __future__ import annotations

import time
from collections import defaultdict

PREFIX = "sync_"

# Absorbed-failure counters, grouped by the part of the core that counts them.
ABSORBED_ERRORS: dict[str, tuple[str, ...]] = {
    "subscriptions": ("stale_deliveries_total", "subscription_errors_total"),
    "documents": ("malformed_documents_total",),
    "feed": ("feed_errors_total", "feed_enrichment_failures_total"),
    "role": ("role_projection_errors_total",),
    "inbox": ("inbox_errors_total",),
    "notifications": ("notifications_failed_total", "recipient_discovery_failures_total"),
    "workflows": ("workflow_failures_total",),
}

HELP = {
    "snapshots_delivered_total": "Snapshots handed to subscription consumers",
    "stale_deliveries_total": "Deliveries dropped for a superseded subscription or snapshot",
    "subscription_errors_total": "Subscriptions ended by a listener error",
    "malformed_documents_total": "Documents skipped because a required field was unusable",
    "notifications_sent_total": "Notification records written",
    "notifications_failed_total": "Recipients whose notification could not be written",
    "workflow_commits_total": "Invitation workflows committed",
    "workflow_rejections_total": "Invitation workflows refused by a precondition",
    "workflow_failures_total": "Invitation workflows that failed in the store",
    "subscriptions_active": "Live subscription keys",
    "unread_notifications": "Unread records in the signed-in user's inbox",
}


class MetricsCollector:
    """Counters and gauges for the sync core, all named with the ``sync_`` prefix."""

    def __init__(self) -> None:
        self._counters: dict[str, int] = defaultdict(int)
        self._gauges: dict[str, float] = {}
        self._start_time = time.time()

    @property
    def uptime_seconds(self) -> float:
        return time.time() - self._start_time

    def inc(self, name: str, value: int = 1) -> None:
        self._counters[f"{PREFIX}{name}"] += value

    def set_gauge(self, name: str, value: float) -> None:
        self._gauges[f"{PREFIX}{name}"] = value

    def get(self, name: str) -> int | float:
        """Current value of a counter or gauge; 0 if never recorded."""
        full = f"{PREFIX}{name}"
        if full in self._gauges:
            return self._gauges[full]
        return self._counters.get(full, 0)

    def absorbed_errors(self) -> dict[str, int]:
        """Absorbed failures per area, only for areas that had any."""
        summary = {}
        for area, names in ABSORBED_ERRORS.items():
            total = sum(self._counters.get(f"{PREFIX}{name}", 0) for name in names)
            if total:
                summary[area] = total
        return summary

    def to_prometheus(self) -> str:
        lines = []
        for kind, values in (("counter", self._counters), ("gauge", self._gauges)):
            for name, value in sorted(values.items()):
                help_text = HELP.get(name[len(PREFIX):])
                if help_text:
                    lines.append(f"# HELP {name} {help_text}")
                lines.append(f"# TYPE {name} {kind}")
                lines.append(f"{name} {value}")
        lines.append(f"# TYPE {PREFIX}uptime_seconds gauge")
        lines.append(f"{PREFIX}uptime_seconds {self.uptime_seconds:.1f}")
        return "\n".join(lines) + "\n"
