from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


_DEFAULT_MS_BUCKETS = (50, 100, 250, 500, 1000, 2500, 5000, 10000, 20000)


def _prom_name(name: str) -> str:
    # Prometheus does not allow '.' in metric names.
    return (name or "").replace(".", "_")


@dataclass
class Metrics:
    counters: dict[str, int] = field(default_factory=dict)
    histograms: dict[str, list[int]] = field(default_factory=dict)
    gauges: dict[str, int] = field(default_factory=dict)

    def inc(self, name: str, value: int = 1) -> None:
        self.counters[name] = self.counters.get(name, 0) + value

    def observe(self, name: str, value: int) -> None:
        self.histograms.setdefault(name, []).append(int(value))

    def set(self, name: str, value: int) -> None:
        self.gauges[name] = int(value)

    def get(self, name: str) -> int:
        return int(self.counters.get(name, 0))

    def get_hist(self, name: str) -> list[int]:
        return list(self.histograms.get(name, []))

    def get_gauge(self, name: str) -> int:
        return int(self.gauges.get(name, 0))

    def snapshot(self) -> dict[str, Any]:
        return {
            "counters": dict(self.counters),
            "histograms": {k: list(v) for k, v in self.histograms.items()},
            "gauges": dict(self.gauges),
        }

    def render_prometheus(self, *, ms_buckets: tuple[int, ...] = _DEFAULT_MS_BUCKETS) -> str:
        lines: list[str] = []
        for name in sorted(self.counters):
            key = _prom_name(name)
            lines.append(f"# TYPE {key} counter")
            lines.append(f"{key} {int(self.counters[name])}")

        for name in sorted(self.histograms):
            key = _prom_name(name)
            values = self.histograms[name]
            lines.append(f"# TYPE {key} histogram")
            for b in ms_buckets:
                c = sum(1 for v in values if v <= int(b))
                lines.append(f'{key}_bucket{{le="{int(b)}"}} {c}')
            lines.append(f'{key}_bucket{{le="+Inf"}} {len(values)}')
            lines.append(f"{key}_sum {int(sum(values))}")
            lines.append(f"{key}_count {len(values)}")

        for name in sorted(self.gauges):
            key = _prom_name(name)
            lines.append(f"# TYPE {key} gauge")
            lines.append(f"{key} {int(self.gauges[name])}")

        return "\n".join(lines) + "\n"


DUET = {
    # Cadence
    "ticks_total": "engine.ticks_total",
    "tick_skipped_emitting_total": "engine.tick_skipped_emitting_total",
    "tick_skipped_dormant_total": "engine.tick_skipped_dormant_total",
    # Generation
    "generator_calls_total": "generator.calls_total",
    "generator_failures_total": "generator.failures_total",
    "generator_latency_ms": "generator.latency_ms",
    # Turns
    "turns_committed_total": "turns.committed_total",
    "human_turns_total": "turns.human_total",
    "duplicate_order_total": "turns.duplicate_order_total",
    "turns_current": "turns.current",
    # Remote ingest
    "remote_accepted_total": "ingest.remote_accepted_total",
    "echo_suppressed_total": "ingest.echo_suppressed_total",
    "redelivery_dropped_total": "ingest.redelivery_dropped_total",
    "bad_schema_total": "ingest.bad_schema_total",
    "foreign_session_total": "ingest.foreign_session_total",
    # Persistence
    "persist_ok_total": "persist.ok_total",
    "persist_failures_total": "persist.failures_total",
    # Ledger
    "ledger_pending_current": "ledger.pending_current",
    "ledger_evicted_total": "ledger.evicted_total",
    # Dormancy
    "dormancy_announced_total": "dormancy.announced_total",
    "dormancy_entered_total": "dormancy.entered_total",
    "dormancy_woke_total": "dormancy.woke_total",
    # Session
    "load_failures_total": "session.load_failures_total",
    "session_loads_total": "session.loads_total",
    "day_rollover_total": "session.day_rollover_total",
}
