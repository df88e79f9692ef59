from __future__ import annotations

from typing import Final

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest

_PROM_CONTENT_TYPE: Final[str] = "text/plain; version=0.0.4; charset=utf-8"


class Metrics:
    def __init__(self, *, registry: CollectorRegistry | None = None) -> None:
        self._registry = registry or CollectorRegistry(auto_describe=True)

        self._selections_total = Counter(
            "pool_router_selections_total",
            "Total account selections by scope, strategy and outcome.",
            labelnames=("scope", "strategy", "outcome"),
            registry=self._registry,
        )
        self._health_events_total = Counter(
            "pool_router_health_events_total",
            "Total health transitions applied to key or group mappings.",
            labelnames=("scope", "event"),
            registry=self._registry,
        )
        self._permission_mutations_total = Counter(
            "pool_router_permission_mutations_total",
            "Total permission rule mutations.",
            labelnames=("action",),
            registry=self._registry,
        )
        self._health_check_errors_total = Counter(
            "pool_router_health_check_errors_total",
            "Health check failures isolated to a single entity.",
            labelnames=("scope",),
            registry=self._registry,
        )
        self._group_healthy = Gauge(
            "pool_router_group_healthy",
            "1 when the group was healthy at its last health check, 0 otherwise.",
            labelnames=("group",),
            registry=self._registry,
        )

    @property
    def content_type(self) -> str:
        return _PROM_CONTENT_TYPE

    def render(self) -> bytes:
        return generate_latest(self._registry)

    def observe_selection(self, *, scope: str, strategy: str, outcome: str) -> None:
        self._selections_total.labels(
            scope=scope or "unknown",
            strategy=strategy or "unknown",
            outcome=outcome or "unknown",
        ).inc()

    def observe_health_event(self, *, scope: str, event: str) -> None:
        self._health_events_total.labels(scope=scope or "unknown", event=event or "unknown").inc()

    def observe_permission_mutation(self, *, action: str) -> None:
        self._permission_mutations_total.labels(action=action or "unknown").inc()

    def observe_health_check_error(self, *, scope: str) -> None:
        self._health_check_errors_total.labels(scope=scope or "unknown").inc()

    def set_group_health(self, *, group: str, healthy: bool) -> None:
        self._group_healthy.labels(group=group or "unknown").set(1.0 if healthy else 0.0)
