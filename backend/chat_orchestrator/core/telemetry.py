"""
Metric emission over structlog.

Counters, timings and gauges are written as `metric` events so the log
pipeline can aggregate them alongside LangSmith traces. Emission must never
block or fail the caller, so every method discards its own errors.
"""

from chat_orchestrator.core.logging import get_logger

log = get_logger("chat_orchestrator.metrics")


class Telemetry:
    def __init__(self, prefix: str = "chat"):
        self._prefix = prefix

    def increment(self, name: str, value: int = 1, **tags) -> None:
        self._emit("counter", name, value, tags)

    def timing(self, name: str, duration_ms: float, **tags) -> None:
        self._emit("timing", name, round(duration_ms, 2), tags)

    def gauge(self, name: str, value: float, **tags) -> None:
        self._emit("gauge", name, value, tags)

    def _emit(self, kind: str, name: str, value, tags: dict) -> None:
        try:
            log.info("metric", kind=kind, metric=f"{self._prefix}.{name}", value=value, **tags)
        except Exception:  # noqa: BLE001
            pass
