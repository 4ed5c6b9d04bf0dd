import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

import aiohttp

from strategy.signal_manager import TradingSignal


logger = logging.getLogger(__name__)


class ExportError(RuntimeError):
    pass


class ExportSink(ABC):
    @abstractmethod
    async def export(self, signal: TradingSignal) -> bool:
        pass


class WebhookExportSink(ExportSink):
    """POSTs accepted signals as JSON to an external collector."""

    def __init__(self, url: Optional[str], timeout_s: float = 5.0):
        # Treat empty or placeholder URLs as disabled
        if url and 'your-webhook-url' not in str(url):
            self.webhook_url = url
            self.enabled = True
        else:
            self.webhook_url = None
            self.enabled = False
        self.timeout_s = timeout_s

    @classmethod
    def from_config(cls, export_cfg: Optional[Dict] = None) -> Optional['WebhookExportSink']:
        cfg = export_cfg or {}
        sink = cls(cfg.get('webhook_url'), timeout_s=float(cfg.get('timeout_s', 5)))
        return sink if sink.enabled else None

    async def export(self, signal: TradingSignal) -> bool:
        if not self.enabled:
            logger.debug("[Export] disabled, skipping %s", signal.signal_id)
            return False

        payload = {
            'type': 'trading_signal',
            'signal': signal.to_dict(),
        }
        async with aiohttp.ClientSession() as session:
            try:
                async with session.post(
                    self.webhook_url,
                    json=payload,
                    headers={'Content-Type': 'application/json'},
                    timeout=aiohttp.ClientTimeout(total=self.timeout_s)
                ) as response:
                    if response.status >= 300:
                        raise ExportError(f"Webhook responded with status {response.status}")
            except aiohttp.ClientError as exc:
                raise ExportError(f"Webhook request failed: {exc}") from exc
        logger.info("[Export] Signal %s sent to %s", signal.signal_id, self.webhook_url)
        return True
