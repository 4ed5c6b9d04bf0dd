import errno
import logging
from pathlib import Path
from prometheus_client import Counter, Gauge, Histogram, start_http_server
from typing import Optional

from config import config


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None


def _get_port_scan_limit() -> int:
    try:
        return int(config.monitoring.get('prometheus_port_scan', 0) or 0)
    except Exception:
        return 0


def _get_port_file() -> Optional[Path]:
    monitoring_cfg = config.get('monitoring', {})
    path_value = monitoring_cfg.get('metrics_port_file') if monitoring_cfg else None
    if not path_value:
        return None
    return Path(path_value)


def _write_port_file(port: int) -> None:
    port_file = _get_port_file()
    if not port_file:
        return
    try:
        port_file.parent.mkdir(parents=True, exist_ok=True)
        port_file.write_text(str(port))
    except Exception as exc:
        logger.warning("Failed to persist metrics port file %s: %s", port_file, exc)


class MetricsCollector:
    def __init__(self):
        self.tick_count = Counter('ticks_processed_total', 'Total ticks ingested', ['instrument'])
        self.current_price = Gauge('current_price', 'Latest tick price', ['instrument'])
        self.cvd_value = Gauge('cvd_current', 'Current CVD value', ['instrument'])
        self.rsi_value = Gauge('rsi_current', 'Current RSI value', ['instrument'])

        self.computations = Counter('indicator_computations_total', 'Indicator computations completed', ['instrument'])
        self.computation_failures = Counter(
            'indicator_computation_failures_total',
            'Indicator or strategy computations that raised',
            ['instrument']
        )
        self.computations_dropped = Counter(
            'indicator_computations_dropped_total',
            'Queued computations superseded by a newer request',
            ['instrument']
        )
        self.computation_latency = Histogram(
            'indicator_computation_latency_seconds',
            'Latency from dispatch to computed snapshot'
        )
        self.inflight = Gauge('indicator_computations_inflight', 'Computations currently outstanding')

        self.signals_admitted = Counter('signals_admitted_total', 'Signals accepted by the debouncer', ['strategy'])
        self.signals_rejected = Counter('signals_rejected_total', 'Signals rejected by the debouncer', ['strategy', 'reason'])
        self.pending_signals = Gauge('pending_signal_keys', 'Debouncer keys currently pending')

        self.signals_persisted = Counter('signals_persisted_total', 'Signals written to the persistence sink')
        self.persistence_failures = Counter('persistence_failures_total', 'Persistence sink failures', ['operation'])
        self.exports = Counter('signal_exports_total', 'Signal export attempts', ['status'])

    def record_tick(self, instrument: str, price: float):
        self.tick_count.labels(instrument=instrument).inc()
        self.current_price.labels(instrument=instrument).set(price)

    def update_indicators(self, instrument: str, rsi: float, cvd: float):
        self.rsi_value.labels(instrument=instrument).set(rsi)
        self.cvd_value.labels(instrument=instrument).set(cvd)

    def record_computation(self, instrument: str, latency_seconds: Optional[float] = None):
        self.computations.labels(instrument=instrument).inc()
        if latency_seconds is not None:
            self.computation_latency.observe(latency_seconds)

    def record_computation_failure(self, instrument: str):
        self.computation_failures.labels(instrument=instrument).inc()

    def record_computation_dropped(self, instrument: str):
        self.computations_dropped.labels(instrument=instrument).inc()

    def update_inflight(self, count: int):
        self.inflight.set(count)

    def record_signal_admitted(self, strategy: str):
        self.signals_admitted.labels(strategy=strategy).inc()

    def record_signal_rejected(self, strategy: str, reason: str):
        self.signals_rejected.labels(strategy=strategy, reason=reason).inc()

    def update_pending_signals(self, count: int):
        self.pending_signals.set(count)

    def record_signal_persisted(self):
        self.signals_persisted.inc()

    def record_persistence_failure(self, operation: str):
        self.persistence_failures.labels(operation=operation).inc()

    def record_export(self, success: bool):
        self.exports.labels(status='ok' if success else 'failed').inc()


def start_metrics_server(port: int = 9090):
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return
    port_scan_limit = max(0, _get_port_scan_limit())
    last_error: Optional[OSError] = None
    for offset in range(port_scan_limit + 1):
        candidate = port + offset
        try:
            start_http_server(candidate)
        except OSError as exc:
            last_error = exc
            if exc.errno == errno.EADDRINUSE:
                logger.warning(
                    "Prometheus metrics server port %s already in use; trying next candidate",
                    candidate,
                )
                continue
            raise
        _METRICS_SERVER_STARTED = True
        _METRICS_PORT = candidate
        _write_port_file(candidate)
        logger.info("Prometheus metrics server started on port %s", candidate)
        return
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error

metrics = MetricsCollector()
