import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Dict, Iterator, Optional

from api.metrics import start_metrics_server
from config import Config, config
from config.utils import get_config_section
from monitoring.async_utils import run_tasks_with_cleanup
from monitoring.logging_utils import setup_logging
from orchestration.engine import SignalEngine
from orchestration.scheduler import VirtualClock


logger = logging.getLogger(__name__)


def iter_ticks(path: Path) -> Iterator[Dict]:
    """Yield ticks from a JSONL file, one object per line.

    Each object needs ``instrument`` (or ``symbol``), ``price`` and ``volume``;
    ``open_interest`` and ``timestamp`` (ms) are optional.
    """
    with path.open('r', encoding='utf-8') as handle:
        for line_no, line in enumerate(handle, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                raw = json.loads(line)
                yield {
                    'instrument': raw.get('instrument') or raw['symbol'],
                    'price': float(raw['price']),
                    'volume': float(raw.get('volume', 0.0)),
                    'open_interest': float(raw.get('open_interest') or raw.get('openInterest') or 0.0),
                    'timestamp': int(raw['timestamp']) if raw.get('timestamp') is not None else None,
                }
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping malformed tick on line %d: %s", line_no, exc)


class ReplayRunner:
    """Feeds a recorded tick file through the engine on a data-driven clock."""

    def __init__(self, engine: SignalEngine, clock: VirtualClock):
        self.engine = engine
        self.clock = clock
        self.ticks = 0

    async def replay(self, path: Path) -> None:
        await self.engine.start(run_timers=False)
        try:
            for tick in iter_ticks(path):
                if tick['timestamp'] is None:
                    tick['timestamp'] = self.clock.now_ms()
                else:
                    self.clock.set(tick['timestamp'])
                future = await self.engine.on_tick(**tick)
                if future is not None:
                    # Replays are sequential so no tick is superseded
                    await asyncio.wait([future])
                self.ticks += 1
            await self.engine.drain()
        finally:
            await self.engine.stop()

    async def summary(self) -> Dict:
        signals = await self.engine.persistence.query()
        return {
            'ticks': self.ticks,
            'signals': len(signals),
            'by_strategy': {
                strategy: sum(1 for s in signals if s.strategy == strategy)
                for strategy in sorted({s.strategy for s in signals})
            },
            **self.engine.stats(),
        }


async def main(args: Optional[argparse.Namespace] = None) -> int:
    args = args or parse_args()
    cfg = Config(args.config) if args.config else config
    monitoring_cfg = get_config_section(cfg, 'monitoring')
    if args.metrics:
        start_metrics_server(int(monitoring_cfg.get('prometheus_port', 9090)))

    clock = VirtualClock()
    engine = SignalEngine.from_config(cfg, clock=clock)
    runner = ReplayRunner(engine, clock)

    async def _report():
        print(json.dumps(await runner.summary(), indent=2, default=str))

    task = asyncio.create_task(runner.replay(Path(args.replay)), name='replay')
    ok = await run_tasks_with_cleanup([task], cleanup=_report, timeout_s=args.timeout)
    return 0 if ok else 1


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Replay ticks through the signal engine')
    parser.add_argument('--replay', required=True, help='JSONL tick file')
    parser.add_argument('--config', help='Alternative YAML config path')
    parser.add_argument('--metrics', action='store_true', help='Expose Prometheus metrics while replaying')
    parser.add_argument('--timeout', type=float, default=None, help='Abort the replay after this many seconds')
    return parser.parse_args(argv)


if __name__ == "__main__":
    cli_args = parse_args()
    setup_logging(config.get('monitoring', {}).get('log_level', 'INFO'))
    try:
        sys.exit(asyncio.run(main(cli_args)))
    except KeyboardInterrupt:
        logger.info("Replay interrupted")
