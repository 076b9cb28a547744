"""
Prediction Market Strategy
One risk-sized Polymarket bet per cycle, steered by the owner's strategy text
and the loop's own reflections
"""
import asyncio
import math
import re
import time
from dataclasses import dataclass
from typing import Callable, Optional

from loguru import logger

import config as cfg
from core.ingestion.validators.response_validator import is_skip_response, parse_price
from core.strategy_brain.strategies.base_strategy import PromptStrategy
from execution.bankr_client import PromptFn
from execution.execution_safety import ExecutionSafetyManager
from execution.risk_guard import RiskGuard
from feedback.learning_engine import LearningEngine
from models import BetResult, PolymarketStats, PolymarketTrade, now_ms
from monitoring.notifier import NotifyFn
from storage.memory_store import MemoryStore, new_id


SURVIVAL_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"can'?t\s+(afford\s+to\s+)?lose",
        r"last\s+\$",
        r"surviv",
        r"don'?t\s+lose",
        r"all\s+i\s+have",
        r"rent\s+money",
    )
]


def is_survival_language(strategy: str) -> bool:
    return any(p.search(strategy or "") for p in SURVIVAL_PATTERNS)


def format_usd(amount: float) -> str:
    return f"{amount:.2f}".rstrip("0").rstrip(".")


@dataclass
class BetSizing:
    """How a bet amount was derived."""
    win_rate: float
    edge: float
    risk_factor: float
    raw_amount: float
    max_amount: float
    amount: float


def compute_bet_size(
    balance: float,
    wins: int,
    total_bets: int,
    strategy: str = "",
    min_bet: float = cfg.MIN_BET_USD,
    max_fraction: float = cfg.MAX_BET_BALANCE_FRACTION,
) -> BetSizing:
    """
    Size a bet from the trailing win rate and the available balance.

    win_rate = wins / total_bets (0.5 with no history)
    edge = max(0.1, win_rate - 0.5)
    risk_factor = 0.5 for survival language, 1.5 when winning (> 60%, >= 5 bets),
                  0.6 when losing (< 40%, >= 5 bets), else 1.0
    amount = floor(balance * edge * risk_factor), at least min_bet,
             at most balance * max_fraction
    """
    win_rate = wins / total_bets if total_bets > 0 else 0.5
    # rounded so 0.7 - 0.5 sizes as 0.2, not 0.19999...
    edge = max(0.1, round(win_rate - 0.5, 6))

    if is_survival_language(strategy):
        risk_factor = 0.5
    elif win_rate > 0.6 and total_bets >= 5:
        risk_factor = 1.5
    elif win_rate < 0.4 and total_bets >= 5:
        risk_factor = 0.6
    else:
        risk_factor = 1.0

    raw = float(math.floor(balance * edge * risk_factor))
    max_amount = balance * max_fraction
    amount = max(min_bet, min(raw, max_amount))

    return BetSizing(
        win_rate=win_rate,
        edge=edge,
        risk_factor=risk_factor,
        raw_amount=raw,
        max_amount=max_amount,
        amount=amount,
    )


class PredictionMarketStrategy(PromptStrategy):
    """
    Prediction-market loop.

    Inactive until the owner sets a strategy; it never activates on its own.

    Workflow per cycle:
    1. Loss-streak guard (pause at 4+, halve the bet at 2-3)
    2. Refresh the cached balance (at most every 5 minutes)
    3. Size the bet and consult the risk guard
    4. One bet-placement prompt under a wall-clock timeout
    5. Record a pending bet, then reflect and store the learning
    """

    def __init__(
        self,
        prompt: PromptFn,
        store: MemoryStore,
        safety: ExecutionSafetyManager,
        risk_guard: RiskGuard,
        learning: Optional[LearningEngine] = None,
        notify: Optional[NotifyFn] = None,
        balance_refresh_seconds: float = cfg.BALANCE_REFRESH_SECONDS,
        bet_timeout: float = cfg.BET_PLACEMENT_TIMEOUT_SECONDS,
        settlement_chain: str = cfg.PREDICTION_SETTLEMENT_CHAIN,
        clock: Callable[[], float] = time.monotonic,
        user_id: str = cfg.AGENT_USER_ID,
    ):
        """
        Initialize prediction-market strategy.

        Args:
            risk_guard: Consulted before every bet, informed on settlement
            learning: Reflection memory (built from the store if omitted)
            balance_refresh_seconds: Minimum age before the balance is re-queried
            bet_timeout: Wall-clock limit for bet placement in seconds
            settlement_chain: Only funds already on this chain may be used
            clock: Monotonic clock for the balance cache
        """
        super().__init__("prediction_market", prompt, store, safety, notify, user_id)
        self.risk_guard = risk_guard
        self.learning = learning or LearningEngine(store)
        self.balance_refresh_seconds = balance_refresh_seconds
        self.bet_timeout = bet_timeout
        self.settlement_chain = settlement_chain
        self._clock = clock

        self._strategy: Optional[str] = None
        self._balance: Optional[float] = None
        self._balance_fetched_at: Optional[float] = None
        self._bets_placed = 0
        self._skips = 0

        logger.info(
            f"Initialized Prediction Market Strategy "
            f"(settlement={settlement_chain}, timeout={bet_timeout}s)"
        )

    # ------------------------------------------------------------------
    # Strategy text
    # ------------------------------------------------------------------

    @property
    def strategy(self) -> Optional[str]:
        return self._strategy

    @property
    def is_active(self) -> bool:
        return bool(self._strategy)

    def set_strategy(self, strategy: str) -> None:
        text = (strategy or "").strip()
        if not text:
            raise ValueError("Strategy text must not be empty")
        self._strategy = text
        logger.info(f"Prediction strategy set: {text[:80]}")

    def clear_strategy(self) -> None:
        if self._strategy:
            logger.info("Prediction strategy cleared")
        self._strategy = None

    # ------------------------------------------------------------------
    # Balance
    # ------------------------------------------------------------------

    @property
    def cached_balance(self) -> Optional[float]:
        return self._balance

    async def refresh_balance(self, force: bool = False) -> Optional[float]:
        """Query the available balance unless the cached one is recent enough."""
        now = self._clock()
        if (
            not force
            and self._balance is not None
            and self._balance_fetched_at is not None
            and now - self._balance_fetched_at < self.balance_refresh_seconds
        ):
            return self._balance

        result = await self._execute(
            "research",
            f"What is my total USDC balance available on {self.settlement_chain}? "
            f"Just give me the number.",
            purpose="balance",
        )
        if not result.success:
            return self._balance

        parsed = parse_price(self.response_text(result))
        if not parsed.ok:
            logger.warning(f"Could not parse balance from: {parsed.raw[:80]!r}")
            return self._balance

        self._balance = parsed.price
        self._balance_fetched_at = now
        logger.info(f"Available balance on {self.settlement_chain}: ${parsed.price:.2f}")
        return self._balance

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def scan_polymarket(self) -> str:
        """
        Run one prediction-market cycle.

        Returns:
            Outcome text (never raises)
        """
        if not self._strategy:
            return "No Polymarket strategy set"

        try:
            return await self._scan()
        except Exception as e:
            logger.exception(f"Polymarket scan error: {e}")
            return f"❌ Failed: Polymarket scan error: {e}"

    async def _scan(self) -> str:
        strategy = self._strategy
        cycle = self._next_cycle()

        logger.info("=" * 60)
        logger.info(f"🎯 Polymarket cycle #{cycle}")
        logger.info("=" * 60)

        streak = self.store.consecutive_polymarket_losses()
        if streak >= cfg.LOSS_STREAK_PAUSE:
            self._skips += 1
            message = (
                f"⏸️ Polymarket auto-trading paused to protect capital: "
                f"{streak} consecutive losses."
            )
            logger.warning(message)
            await self._notify(message)
            return message

        balance = await self.refresh_balance()
        if balance is None or balance <= 0:
            return "❌ Failed: could not determine available balance"

        stats: PolymarketStats = self.store.memory.polymarket_stats
        sizing = compute_bet_size(balance, stats.wins, stats.total_bets, strategy)
        bet = sizing.amount

        caution = ""
        if streak >= cfg.LOSS_STREAK_CAUTION:
            bet = max(cfg.MIN_BET_USD, bet / 2)
            caution = (
                f"CAUTION: the last {streak} bets lost. Bet size has been halved. "
                f"Be extra selective and prefer SKIP over a marginal bet.\n\n"
            )

        logger.info(
            f"Bet sizing: balance=${balance:.2f} win_rate={sizing.win_rate:.2f} "
            f"edge={sizing.edge:.2f} risk_factor={sizing.risk_factor} "
            f"raw=${sizing.raw_amount:.0f} cap=${sizing.max_amount:.2f} -> ${bet:.2f}"
        )

        check = self.risk_guard.can_trade(bet, balance)
        if not check.allowed:
            logger.warning(f"Risk guard blocked prediction bet: {check.reason}")
            return f"⛔ Prediction bet blocked: {check.reason}"

        amount = format_usd(bet)
        try:
            result = await asyncio.wait_for(
                self._execute(
                    "polymarket_bet",
                    self._build_bet_prompt(strategy, amount, stats, caution),
                    amount=amount,
                ),
                timeout=self.bet_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"Bet placement timed out after {self.bet_timeout:.0f}s")
            return f"❌ Failed: bet placement timed out after {self.bet_timeout:.0f}s"

        if not result.success:
            return f"❌ Failed: Polymarket bet failed: {result.error_message}"

        response = self.response_text(result) or "No results"

        if is_skip_response(response):
            self._skips += 1
            message = f"⏭️ Polymarket scan skipped: {response.strip()[:200]}"
            logger.info(message)
            await self._notify(message)
            return message

        trade = self.store.record_polymarket_trade(
            PolymarketTrade(
                id=new_id("pm"),
                market=response[:100],
                outcome="see response",
                amount=f"${amount}",
                odds="see response",
                timestamp=now_ms(),
                result=BetResult.PENDING,
                external_response=response,
                strategy=strategy,
            )
        )
        self._bets_placed += 1

        await self._reflect(strategy, response)

        await self._notify(
            f"🎯 *Polymarket Auto-Trade #{stats.total_bets}* (${amount})\n\n{response}"
        )
        logger.info(f"Recorded pending bet {trade.id} (${amount})")
        return response

    def _build_bet_prompt(
        self,
        strategy: str,
        amount: str,
        stats: PolymarketStats,
        caution: str,
    ) -> str:
        chain = self.settlement_chain
        return (
            "You are executing a continuous Polymarket trading strategy.\n\n"
            f"STRATEGY: {strategy}\n\n"
            f"{caution}"
            f"BET SIZE: ${amount} for this cycle.\n\n"
            "PAST PERFORMANCE:\n"
            f"- Total bets: {stats.total_bets} | Wins: {stats.wins} | Losses: {stats.losses}\n"
            f"- P&L: ${stats.total_pnl:.2f}\n"
            f"- Recent learnings:\n{self.learning.learnings_block()}\n\n"
            "INSTRUCTIONS:\n"
            "1. Find exactly ONE market that matches the strategy and has a clear edge\n"
            f"2. Place a single bet of ${amount} on it\n"
            f"3. Only use funds already on {chain}. Do NOT swap or bridge from any other chain\n"
            "4. If no market has a clear edge, reply with exactly: SKIP: no clear edge\n"
            f"5. Report: what market, what side, the odds, ${amount} bet, and why"
        )

    async def _reflect(self, strategy: str, last_result: str) -> None:
        result = await self._execute(
            "research",
            self.learning.build_reflection_prompt(strategy, last_result),
            purpose="reflection",
        )
        if result.success:
            self.learning.record_reflection(self.response_text(result))
        else:
            logger.warning(f"Reflection failed: {result.error_message}")

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def settle_bet(self, trade_id: str, result: BetResult, pnl: float) -> str:
        """
        Resolve a pending bet reported by the owner or a settlement feed.

        Args:
            trade_id: Pending bet id
            result: BetResult.WIN or BetResult.LOSS
            pnl: Realized pnl in USD

        Returns:
            Outcome text
        """
        try:
            trade = self.store.settle_polymarket_trade(trade_id, result, pnl)
        except ValueError as e:
            return f"❌ Failed: {e}"
        if trade is None:
            return f"❌ Failed: no pending bet {trade_id}"

        portfolio = self._balance if self._balance else cfg.PORTFOLIO_VALUE_USD
        self.risk_guard.record_trade(pnl, portfolio)
        self.learning.update_rankings()

        emoji = "✅" if result == BetResult.WIN else "❌"
        return f"{emoji} Settled {trade_id}: {result.value} ({pnl:+.2f} USD)"

    def get_stats(self) -> dict:
        stats = super().get_stats()
        stats.update(
            {
                "active": self.is_active,
                "bets_placed": self._bets_placed,
                "skips": self._skips,
                "cached_balance": self._balance,
            }
        )
        return stats
