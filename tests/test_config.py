import sys

sys.path.insert(0, '.')

import pytest

from config import Config, SectionProxy
from config.utils import get_config_section


def _write_config(tmp_path, text):
    path = tmp_path / 'config.yaml'
    path.write_text(text)
    return path


def test_default_config_has_engine_sections():
    cfg = Config()
    for section in ('engine', 'dispatcher', 'indicators', 'debouncer', 'strategies', 'persistence', 'monitoring'):
        assert section in cfg.to_dict()
    assert cfg.debouncer.duplicate_window_ms == 15000
    assert cfg.strategies.pump.take_profit_pct == 0.03
    assert isinstance(cfg['strategies'], SectionProxy)


def test_env_placeholders_resolve(tmp_path, monkeypatch):
    path = _write_config(tmp_path, (
        "persistence:\n"
        "  path: ${TEST_SIGNAL_STORE}\n"
        "export:\n"
        "  webhook_url: ${TEST_UNSET_WEBHOOK}\n"
    ))
    monkeypatch.setenv('TEST_SIGNAL_STORE', '/tmp/signals.json')
    monkeypatch.delenv('TEST_UNSET_WEBHOOK', raising=False)
    cfg = Config(str(path))
    assert cfg.persistence.path == '/tmp/signals.json'
    assert cfg.get('export').get('webhook_url') is None


def test_missing_and_invalid_files_raise(tmp_path):
    with pytest.raises(RuntimeError):
        Config(str(tmp_path / 'missing.yaml'))
    bad = _write_config(tmp_path, "engine: [unclosed\n")
    with pytest.raises(RuntimeError):
        Config(str(bad))


def test_unknown_attribute_raises_attribute_error(tmp_path):
    cfg = Config(str(_write_config(tmp_path, "engine:\n  history_capacity: 50\n")))
    with pytest.raises(AttributeError):
        cfg.missing_section
    with pytest.raises(AttributeError):
        cfg.engine.missing_key


def test_reload_picks_up_changes(tmp_path):
    path = _write_config(tmp_path, "engine:\n  history_capacity: 50\n")
    cfg = Config(str(path))
    path.write_text("engine:\n  history_capacity: 75\n")
    cfg.reload()
    assert cfg.engine.history_capacity == 75


def test_get_config_section_accepts_any_source(tmp_path):
    cfg = Config(str(_write_config(tmp_path, "strategies:\n  pump:\n    rsi_max: 90\n")))
    assert get_config_section(cfg, 'strategies.pump') == {'rsi_max': 90}
    assert get_config_section({'strategies': {'pump': {'rsi_max': 70}}}, 'strategies.pump') == {'rsi_max': 70}
    assert get_config_section(cfg, 'strategies.scalping') == {}
    assert get_config_section(None, 'engine') == {}
    assert get_config_section({'engine': 5}, 'engine') == {}
