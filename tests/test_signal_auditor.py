import json
import sys

sys.path.insert(0, '.')

from analytics.indicators import IndicatorSnapshot
from monitoring.signal_auditor import SignalAuditor
from strategy.strategies import StrategyResult


def _decision():
    snapshot = IndicatorSnapshot(instrument='BTCUSDT', timestamp=1_000, price=100.0, rsi=60.0)
    result = StrategyResult(
        strategy='pump',
        entry_price=100.0,
        take_profit=103.0,
        stop_loss=99.0,
        conditions={'rsi': True, 'macd': True},
    )
    return snapshot, result


def test_signal_auditor_writes_one_line_per_decision(tmp_path):
    log_path = tmp_path / 'audit' / 'decisions.jsonl'
    auditor = SignalAuditor(log_path)
    snapshot, result = _decision()

    auditor.record_decision(snapshot, result, accepted=True, persisted=True)
    auditor.record_decision(snapshot, result, accepted=False)

    lines = log_path.read_text().splitlines()
    assert auditor.records_written == 2
    first, second = (json.loads(line) for line in lines)
    assert first['decision'] == 'accepted'
    assert first['persisted'] is True
    assert first['signal'] == 'LONG'
    assert first['indicators']['rsi'] == 60.0
    assert second['decision'] == 'duplicate'
    assert second['persisted'] is None


def test_signal_auditor_swallows_write_errors(tmp_path):
    blocker = tmp_path / 'blocked'
    blocker.write_text('not a directory')
    auditor = SignalAuditor(blocker / 'decisions.jsonl')
    snapshot, result = _decision()
    auditor.record_decision(snapshot, result, accepted=True)
    assert auditor.records_written == 0
