"""
Risk Guard
Daily limits, loss-streak cooldown and drawdown kill switch for new positions
"""
import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, Optional

from loguru import logger

import config as cfg


@dataclass
class RiskLimits:
    """Risk management limits."""
    max_trades_per_day: int = cfg.MAX_TRADES_PER_DAY
    max_daily_loss_usd: float = cfg.MAX_DAILY_LOSS_USD
    cooldown_minutes_after_loss_streak: int = cfg.COOLDOWN_MINUTES_AFTER_LOSS_STREAK
    loss_streak_for_cooldown: int = cfg.LOSS_STREAK_FOR_COOLDOWN
    max_position_size_pct: float = cfg.MAX_POSITION_SIZE_PCT  # % of portfolio
    drawdown_kill_switch_pct: float = cfg.DRAWDOWN_KILL_SWITCH_PCT


@dataclass
class TradeCheck:
    """Answer to 'may a new position be opened?'."""
    allowed: bool
    reason: Optional[str] = None


class RiskGuard:
    """
    Stateful gate in front of every position-opening action.

    Enforces:
    - Daily trade count and daily loss limits (reset on calendar date change)
    - Maximum position size as % of portfolio
    - Cooldown after a streak of losses
    - Drawdown kill switch (latched until reset_kill_switch())
    """

    def __init__(
        self,
        limits: Optional[RiskLimits] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Initialize risk guard.

        Args:
            limits: Risk limits configuration
            clock: Wall clock, injectable for date rollover tests
        """
        self.limits = limits or RiskLimits()
        self._clock = clock

        self._daily_trades = 0
        self._daily_loss = 0.0
        self._last_reset_date: date = self._clock().date()
        self._consecutive_losses = 0
        self._last_loss_time: Optional[datetime] = None
        self._total_drawdown = 0.0
        self._auto_trade_killed = False

        logger.info(
            f"Initialized Risk Guard: "
            f"max_trades/day={self.limits.max_trades_per_day}, "
            f"max_position={self.limits.max_position_size_pct}%, "
            f"kill_switch={self.limits.drawdown_kill_switch_pct}%"
        )

    @property
    def auto_trade_killed(self) -> bool:
        return self._auto_trade_killed

    @property
    def consecutive_losses(self) -> int:
        return self._consecutive_losses

    def _reset_if_new_day(self) -> None:
        today = self._clock().date()
        if today != self._last_reset_date:
            self._daily_trades = 0
            self._daily_loss = 0.0
            self._last_reset_date = today
            logger.info("Reset daily risk counters")

    def can_trade(self, position_size_usd: float, portfolio_value: float) -> TradeCheck:
        """
        Validate if a new position is allowed.

        Args:
            position_size_usd: Size of the new position in USD
            portfolio_value: Current portfolio value in USD

        Returns:
            TradeCheck(allowed, reason)
        """
        self._reset_if_new_day()

        if self._auto_trade_killed:
            return TradeCheck(
                False,
                "Auto-trade disabled due to excessive drawdown. Manual reset required.",
            )

        if self._daily_trades >= self.limits.max_trades_per_day:
            return TradeCheck(
                False, f"Daily trade limit reached ({self.limits.max_trades_per_day})"
            )

        if self._daily_loss >= self.limits.max_daily_loss_usd:
            return TradeCheck(
                False, f"Daily loss limit reached (${self.limits.max_daily_loss_usd:.2f})"
            )

        if portfolio_value <= 0:
            return TradeCheck(False, "Portfolio value unknown or zero")

        position_pct = position_size_usd / portfolio_value * 100
        if position_pct > self.limits.max_position_size_pct:
            return TradeCheck(
                False,
                f"Position size {position_pct:.1f}% exceeds limit of "
                f"{self.limits.max_position_size_pct}%",
            )

        if (
            self._consecutive_losses >= self.limits.loss_streak_for_cooldown
            and self._last_loss_time is not None
        ):
            cooldown = timedelta(minutes=self.limits.cooldown_minutes_after_loss_streak)
            elapsed = self._clock() - self._last_loss_time
            if elapsed < cooldown:
                remaining = math.ceil((cooldown - elapsed).total_seconds() / 60)
                return TradeCheck(
                    False,
                    f"Cooldown active after loss streak. {remaining} minutes remaining.",
                )

        return TradeCheck(True)

    def record_trade(self, pnl_usd: float, portfolio_value: float) -> None:
        """
        Record a completed trade.

        Args:
            pnl_usd: Realized P&L in USD (negative for a loss)
            portfolio_value: Portfolio value the drawdown is measured against
        """
        self._reset_if_new_day()
        self._daily_trades += 1

        if pnl_usd < 0:
            loss = abs(pnl_usd)
            self._daily_loss += loss
            self._consecutive_losses += 1
            self._last_loss_time = self._clock()
            self._total_drawdown += loss

            drawdown_pct = self._total_drawdown / portfolio_value * 100 if portfolio_value > 0 else 100.0
            if drawdown_pct >= self.limits.drawdown_kill_switch_pct and not self._auto_trade_killed:
                self._auto_trade_killed = True
                logger.critical(
                    f"KILL SWITCH: drawdown {drawdown_pct:.1f}% >= "
                    f"{self.limits.drawdown_kill_switch_pct}%, auto-trade disabled"
                )
            else:
                logger.warning(
                    f"Loss recorded: ${loss:.2f} "
                    f"(streak={self._consecutive_losses}, drawdown=${self._total_drawdown:.2f})"
                )
        else:
            self._consecutive_losses = 0
            # wins heal half their size of the drawdown counter
            self._total_drawdown = max(0.0, self._total_drawdown - pnl_usd * 0.5)
            logger.info(f"Win recorded: ${pnl_usd:+.2f} (drawdown=${self._total_drawdown:.2f})")

    def is_daily_loss_exceeded(self) -> bool:
        self._reset_if_new_day()
        return self._daily_loss >= self.limits.max_daily_loss_usd

    def reset_kill_switch(self) -> None:
        """Manual override; the only way to re-enable auto-trade after the switch trips."""
        self._auto_trade_killed = False
        self._total_drawdown = 0.0
        self._consecutive_losses = 0
        logger.warning("Kill switch manually reset")

    def get_status(self) -> Dict[str, Any]:
        self._reset_if_new_day()
        return {
            "daily_trades": self._daily_trades,
            "daily_loss": self._daily_loss,
            "consecutive_losses": self._consecutive_losses,
            "auto_trade_killed": self._auto_trade_killed,
            "total_drawdown": self._total_drawdown,
            "last_reset_date": self._last_reset_date.isoformat(),
        }
