"""
Position Monitor
Re-prices open positions and applies take-profit / stop-loss exits
"""
import asyncio
from typing import Callable, Optional

from loguru import logger

import config as cfg
from core.ingestion.validators.response_validator import parse_price
from core.strategy_brain.strategies.base_strategy import PromptStrategy
from execution.bankr_client import PromptFn
from execution.execution_safety import ExecutionSafetyManager
from execution.risk_guard import RiskGuard
from models import TradeEntry
from monitoring.notifier import NotifyFn
from storage.memory_store import MemoryStore


TAKE_PROFIT_SELL_FRACTION = 0.5
STOP_LOSS_SELL_FRACTION = 1.0


class PositionMonitor(PromptStrategy):
    """
    Exit manager for open spot positions.

    For each open trade: ask for the current price, compute pnl %, sell half
    at take-profit or everything at stop-loss, close the trade and report the
    realized USD pnl to the risk guard.
    """

    def __init__(
        self,
        prompt: PromptFn,
        store: MemoryStore,
        safety: ExecutionSafetyManager,
        risk_guard: RiskGuard,
        notify: Optional[NotifyFn] = None,
        portfolio_value: Optional[Callable[[], float]] = None,
        pause_seconds: float = cfg.POSITION_PAUSE_SECONDS,
        user_id: str = cfg.AGENT_USER_ID,
    ):
        """
        Initialize position monitor.

        Args:
            risk_guard: Receives the realized pnl of every close
            portfolio_value: Portfolio value in USD the drawdown is measured against
            pause_seconds: Pause between positions
        """
        super().__init__("position_monitor", prompt, store, safety, notify, user_id)
        self.risk_guard = risk_guard
        self.portfolio_value = portfolio_value or (lambda: cfg.PORTFOLIO_VALUE_USD)
        self.pause_seconds = pause_seconds

        self._is_monitoring = False
        self._take_profits = 0
        self._stop_losses = 0

        logger.info(f"Initialized Position Monitor (pause={pause_seconds}s)")

    @property
    def is_monitoring(self) -> bool:
        return self._is_monitoring

    async def monitor_positions(self) -> None:
        if self._is_monitoring:
            logger.debug("Monitor cycle already in progress")
            return

        self._is_monitoring = True
        try:
            open_positions = self.store.get_open_positions()
            if not open_positions:
                return

            self._next_cycle()
            logger.info(f"📊 Monitoring {len(open_positions)} open position(s)...")

            for i, trade in enumerate(open_positions):
                if i > 0 and self.pause_seconds > 0:
                    await asyncio.sleep(self.pause_seconds)
                try:
                    await self._check_position(trade)
                except Exception as e:
                    logger.error(f"Error monitoring {trade.symbol}: {e}")
        finally:
            self._is_monitoring = False

    async def _check_position(self, trade: TradeEntry) -> None:
        entry = parse_price(trade.price)
        if not entry.ok:
            logger.debug(f"No usable entry price for {trade.symbol}: {trade.price!r}")
            return

        price = await self._execute(
            "research",
            f"What is the current price of {trade.symbol} on {cfg.SPOT_CHAIN}? Just give me the price number.",
            purpose="price",
            trade_id=trade.id,
        )
        if not price.success:
            return

        current = parse_price(self.response_text(price))
        if not current.ok:
            logger.debug(f"Could not parse price for {trade.symbol}: {current.raw[:80]!r}")
            return

        pnl_pct = (current.price - entry.price) / entry.price * 100
        settings = self.store.settings
        logger.info(f"{trade.symbol}: entry={entry.price} current={current.price} pnl={pnl_pct:+.2f}%")

        if pnl_pct >= settings.take_profit_pct:
            sold = await self._exit(
                trade, current.price, pnl_pct, TAKE_PROFIT_SELL_FRACTION,
                f"Sell 50% of my {trade.symbol} position on {cfg.SPOT_CHAIN}",
            )
            if sold:
                self._take_profits += 1
                await self._notify(
                    f"🎉 *Take Profit Hit!*\n\n"
                    f"{trade.symbol}: +{pnl_pct:.1f}%\n"
                    f"Entry: {trade.price} → Exit: ${current.price}\n"
                    f"Sold 50% of position 💰"
                )

        # a take-profit close above must not be followed by a stop-loss sell
        current_trade = self.store.get_trade(trade.id)
        if current_trade is None or not current_trade.is_open:
            return

        if pnl_pct <= -settings.stop_loss_pct:
            sold = await self._exit(
                trade, current.price, pnl_pct, STOP_LOSS_SELL_FRACTION,
                f"Sell all of my {trade.symbol} on {cfg.SPOT_CHAIN}",
            )
            if sold:
                self._stop_losses += 1
                await self._notify(
                    f"🛑 *Stop Loss Triggered!*\n\n"
                    f"{trade.symbol}: {pnl_pct:.1f}%\n"
                    f"Entry: {trade.price} → Exit: ${current.price}\n"
                    f"Sold all to limit losses 🛡️"
                )

    async def _exit(
        self,
        trade: TradeEntry,
        current_price: float,
        pnl_pct: float,
        fraction: float,
        instruction: str,
    ) -> bool:
        result = await self._execute(
            "trade",
            instruction,
            side="sell",
            trade_id=trade.id,
            fraction=fraction,
        )
        if not result.success:
            return False

        closed = self.store.close_trade(trade.id, str(current_price), f"{pnl_pct:.2f}")
        if closed is None:
            return False

        size_usd = parse_price(trade.amount).price or 0.0
        realized_usd = size_usd * pnl_pct / 100 * fraction
        self.risk_guard.record_trade(realized_usd, self.portfolio_value())
        return True

    def get_stats(self) -> dict:
        stats = super().get_stats()
        stats.update(
            {
                "take_profits": self._take_profits,
                "stop_losses": self._stop_losses,
                "is_monitoring": self._is_monitoring,
            }
        )
        return stats
