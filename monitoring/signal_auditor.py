import json
import logging
from pathlib import Path
from typing import Dict, Optional

from analytics.indicators import IndicatorSnapshot
from strategy.strategies import StrategyResult


logger = logging.getLogger(__name__)


class SignalAuditor:
    """Appends one JSON line per admitted strategy evaluation and its debouncer verdict."""

    def __init__(self, log_path: Optional[str] = None):
        self.log_path = Path(log_path or 'logs/decision_audit.jsonl')
        self.records_written = 0

    def record_decision(
        self,
        snapshot: IndicatorSnapshot,
        result: StrategyResult,
        accepted: bool,
        persisted: Optional[bool] = None,
    ):
        payload = {
            'timestamp': snapshot.timestamp,
            'instrument': snapshot.instrument,
            'strategy': result.strategy,
            'signal': result.signal_type.value,
            'decision': 'accepted' if accepted else 'duplicate',
            'persisted': persisted,
            'entry_price': result.entry_price,
            'conditions': result.conditions,
            'indicators': snapshot.subset(),
        }
        self._write_entry(payload)

    def _write_entry(self, payload: Dict):
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with self.log_path.open('a', encoding='utf-8') as handle:
                handle.write(json.dumps(payload, default=str) + '\n')
            self.records_written += 1
        except Exception as exc:
            logger.error("Failed to persist audit log: %s", exc)
