from __future__ import annotations

from collections import defaultdict

# (name, type, help)
_METRICS: tuple[tuple[str, str, str], ...] = (
    # ── Event bus ──
    ("opsflow_events_published_total", "counter", "Events written to the event log"),
    ("opsflow_event_publish_failures_total", "counter", "Event log writes that failed after retries"),
    ("opsflow_event_fanout_failures_total", "counter", "Change feed fan-out failures"),
    ("opsflow_event_deliveries_total", "counter", "Events queued to subscribers"),
    ("opsflow_event_duplicates_total", "counter", "Redelivered events skipped by subscriber dedup"),
    ("opsflow_event_dropped_slow_consumer_total", "counter", "Events dropped because a subscriber queue was full"),
    ("opsflow_event_catch_up_replayed_total", "counter", "Events replayed from the log during catch-up"),
    ("opsflow_event_bus_channels", "gauge", "Open change feed channels"),
    ("opsflow_event_bus_subscriptions", "gauge", "Live subscriptions"),
    # ── Offers ──
    ("opsflow_offers_broadcast_total", "counter", "Task offers broadcast"),
    ("opsflow_offer_claims_won_total", "counter", "Accept calls that won the claim"),
    ("opsflow_offer_claims_lost_total", "counter", "Accept calls that lost the race or hit an expired offer"),
    ("opsflow_offer_partial_claim_failures_total", "counter", "Claims rolled back because the assignment failed"),
    ("opsflow_offers_expired_total", "counter", "Open offers flipped to expired by the sweep"),
    # ── SLA ──
    ("opsflow_sla_check_runs_total", "counter", "SLA check invocations"),
    ("opsflow_sla_breaches_total", "counter", "SLA breach records created"),
    ("opsflow_sla_breached_open", "gauge", "Breached requests seen by the last check"),
    # ── Workflows ──
    ("opsflow_workflow_executions_success_total", "counter", "Workflow executions finished successfully"),
    ("opsflow_workflow_executions_failed_total", "counter", "Workflow executions that failed"),
)


class MetricsRegistry:
    def __init__(self) -> None:
        self._counters: dict[str, float] = defaultdict(float)
        self._gauges: dict[str, float] = defaultdict(float)

    def inc(self, name: str, value: float = 1.0) -> None:
        self._counters[name] += value

    def set_gauge(self, name: str, value: float) -> None:
        self._gauges[name] = value

    def get_counter(self, name: str) -> float:
        return self._counters.get(name, 0.0)

    def get_gauge(self, name: str) -> float:
        return self._gauges.get(name, 0.0)

    def reset(self) -> None:
        self._counters.clear()
        self._gauges.clear()

    def render_prometheus(self) -> str:
        lines: list[str] = []
        for name, metric_type, help_text in _METRICS:
            value = self.get_counter(name) if metric_type == "counter" else self.get_gauge(name)
            lines.append(f"# HELP {name} {help_text}")
            lines.append(f"# TYPE {name} {metric_type}")
            lines.append(f"{name} {value}")
        return "\n".join(lines)


metrics_registry = MetricsRegistry()
