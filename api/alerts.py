import asyncio
import logging
from typing import Dict, Mapping, Optional, Set

import aiohttp


logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"


class Notifier:
    """Telegram notification channel. Delivery failures are logged, never raised."""

    def __init__(self, cfg: Optional[Mapping] = None):
        cfg = cfg or {}
        token = cfg.get('telegram_token')
        chat_id = cfg.get('telegram_chat_id')
        if token and chat_id:
            self.url = f"{TELEGRAM_API}/bot{token}/sendMessage"
            self.chat_id = str(chat_id)
            self.enabled = True
        else:
            self.url = None
            self.chat_id = None
            self.enabled = False
        self.timeout_s = float(cfg.get('timeout_s', 10))
        self._pending: Set[asyncio.Task] = set()

    async def send_message(self, text: str) -> bool:
        if not self.enabled:
            logger.warning("[Notification] %s", text)
            return False
        payload = {'chat_id': self.chat_id, 'text': text, 'parse_mode': 'Markdown'}
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.url,
                    json=payload,
                    timeout=aiohttp.ClientTimeout(total=self.timeout_s),
                ) as response:
                    if response.status != 200:
                        logger.error("[Notification] Telegram failed with status %s", response.status)
                        return False
            return True
        except Exception as e:
            logger.error("[Notification] Telegram error: %s", e)
            return False

    def notify(self, text: str) -> None:
        """Schedule a message without waiting for delivery."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("[Notification] no running loop, dropped: %s", text)
            return
        task = loop.create_task(self.send_message(text))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def send_alert(self, alert_type: str, message: str, severity: str = 'warning',
                         metadata: Optional[Dict] = None) -> bool:
        icon = {'critical': '🛑', 'warning': '⚠️', 'info': 'ℹ️'}.get(severity, '')
        lines = [f"{icon} *{alert_type.upper()}* ({severity})", message]
        for key, value in (metadata or {}).items():
            lines.append(f"{key}: `{value}`")
        log = logger.error if severity == 'critical' else logger.info
        log("[Alert] %s: %s - %s", severity.upper(), alert_type, message)
        return await self.send_message("\n".join(lines))

    async def fatal_alert(self, message: str, metadata: Optional[Dict] = None) -> bool:
        return await self.send_alert('manual attention required', message, 'critical', metadata)

    def trade_notification(self, asset: str, action: str, price: float,
                           reason: Optional[str] = None, pnl: Optional[float] = None) -> None:
        icon = '📈' if action == 'BUY' else '📉'
        message = f"*{icon} New trade: {action}*\n\n*Asset:* `{asset}`\n*Price:* `{price:.8f}`"
        if reason:
            message += f"\n*Reason:* {reason}"
        if pnl is not None:
            pnl_icon = '🟢' if pnl >= 0 else '🔴'
            message += f"\n*P&L:* {pnl_icon} `${pnl:.2f}`"
        self.notify(message)

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
