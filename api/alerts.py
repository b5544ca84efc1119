import asyncio
import html
import logging
from typing import Optional

import aiohttp

from config import config


logger = logging.getLogger(__name__)


class TelegramNotifier:
    """Telegram ``sendMessage`` sink. Without credentials messages go to the log instead."""

    def __init__(self, token: Optional[str] = None, chat_id: Optional[str] = None,
                 timeout_s: Optional[float] = None):
        notify_cfg = config.section('notifications')
        token = token or notify_cfg.get('telegram_token')
        self.chat_id = chat_id or notify_cfg.get('telegram_chat_id')
        self.timeout_s = float(timeout_s or notify_cfg.get('timeout_s', 5))
        if token and self.chat_id:
            self.url = f"https://api.telegram.org/bot{token}/sendMessage"
            self.enabled = True
        else:
            self.url = None
            self.enabled = False
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout_s))
        return self._session

    async def send_message(self, text: str) -> bool:
        if not self.enabled:
            logger.info("[Notify] %s", text.replace("\n", " | "))
            return False
        payload = {'chat_id': self.chat_id, 'parse_mode': 'HTML', 'text': text}
        try:
            session = await self._get_session()
            async with session.post(self.url, json=payload) as response:
                if response.status != 200:
                    logger.error("[Notify] Telegram failed with status %s", response.status)
                    return False
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("[Notify] Telegram error: %s", e)
            return False
        return True

    async def trade_opened(self, trade) -> bool:
        c = trade.candidate
        targets = " / ".join(f"{t:.6g}" for t in c.targets)
        text = (
            f"🦅 <b>{c.direction.value} {html.escape(c.symbol)}</b> [{trade.mode}]\n"
            f"Entry: {c.entry_price:.6g} ({trade.order_type or 'MARKET'})\n"
            f"SL: {trade.stop_price:.6g} ({c.stop_roi_pct:.1f}%)\n"
            f"TP: {targets}\n"
            f"Lev: {c.leverage}x | {c.strategy_tag} | {html.escape(c.score_label)}"
        )
        return await self.send_message(text)

    async def target_hit(self, trade, index: int, new_stop: float) -> bool:
        text = (
            f"🎯 <b>{html.escape(trade.symbol)}</b> TP{index} hit\n"
            f"Stop at {new_stop:.6g} | PnL {trade.roi_pct:.1f}%"
        )
        return await self.send_message(text)

    async def trade_closed(self, closed) -> bool:
        icon = "✅" if closed.final_roi_pct >= 0 else "🛑"
        text = (
            f"{icon} <b>{html.escape(closed.symbol)}</b> closed: {closed.close_reason.value}\n"
            f"Exit: {closed.exit_price:.6g} | ROI {closed.final_roi_pct:.1f}% "
            f"(move {closed.final_pnl_pct:.2f}%)"
        )
        return await self.send_message(text)

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None
