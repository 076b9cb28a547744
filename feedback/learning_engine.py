"""
Learning Engine
Turns prediction-market outcomes into notes that steer the next bet
"""
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from loguru import logger

from models import BetResult, PolymarketStats
from storage.memory_store import MemoryStore


class LearningEngine:
    """
    Reflection memory for the prediction-market loop.

    Features:
    - Builds the reflection prompt after each bet
    - Stores reflections in the bounded learnings buffer
    - Feeds the most recent reflections back into bet prompts
    - Ranks strategies by realized pnl of settled bets
    """

    def __init__(self, store: MemoryStore, prompt_learnings: int = 5):
        """
        Initialize learning engine.

        Args:
            store: Persistent memory holding the learnings buffer
            prompt_learnings: How many recent learnings go into a bet prompt
        """
        self.store = store
        self.prompt_learnings = prompt_learnings

        logger.info(f"Initialized Learning Engine ({len(self.learnings)} stored learnings)")

    @property
    def learnings(self) -> List[str]:
        return self.store.memory.polymarket_learnings

    def recent_learnings(self, limit: Optional[int] = None) -> List[str]:
        return self.learnings[-(limit or self.prompt_learnings):]

    def learnings_block(self) -> str:
        recent = self.recent_learnings()
        if not recent:
            return "No learnings yet, first scan."
        return "\n".join(recent)

    def build_reflection_prompt(self, strategy: str, last_result: str) -> str:
        stats = self.store.memory.polymarket_stats
        recent = self.store.memory.polymarket_trades[-5:]
        history = "\n".join(
            f"- {t.result.value}: {t.amount} on {t.market[:60]}" for t in recent
        ) or "- none"

        return (
            "You are an AI trading agent reflecting on your Polymarket performance.\n\n"
            f"CURRENT STRATEGY: {strategy}\n"
            f"STATS: {stats.total_bets} bets, {stats.wins}W/{stats.losses}L, "
            f"P&L: ${stats.total_pnl:.2f}\n"
            f"RECENT BETS:\n{history}\n"
            f"LAST RESULT: {last_result[:200]}\n\n"
            "In 1-2 sentences, what should you adjust for the next scan? "
            "Consider: market selection, timing, position sizing, which side to bet on. "
            "If winning, keep doing what works. If losing, adapt."
        )

    def record_reflection(self, reflection: str, now: Optional[datetime] = None) -> Optional[str]:
        """
        Store one reflection, stamped with the minute it was made.

        Returns:
            The stored learning, or None for an empty reflection
        """
        text = (reflection or "").strip()
        if not text:
            return None

        stamp = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%dT%H:%M")
        learning = f"[{stamp}] {text}"
        self.store.add_polymarket_learning(learning)
        logger.info(f"🧠 Polymarket learning: {text[:100]}")
        return learning

    def strategy_performance(self) -> Dict[str, Tuple[int, float]]:
        """Settled bets and summed pnl per strategy text."""
        performance: Dict[str, List[float]] = defaultdict(list)
        for trade in self.store.memory.polymarket_trades:
            if trade.result == BetResult.PENDING or not trade.strategy:
                continue
            try:
                pnl = float(trade.pnl or 0)
            except ValueError:
                pnl = 0.0
            performance[trade.strategy].append(pnl)
        return {s: (len(pnls), sum(pnls)) for s, pnls in performance.items()}

    def update_rankings(self) -> PolymarketStats:
        """Record the best and worst strategy by realized pnl."""
        performance = self.strategy_performance()
        if performance:
            ranked = sorted(performance.items(), key=lambda item: item[1][1], reverse=True)
            best, worst = ranked[0][0], ranked[-1][0]
            stats = self.store.memory.polymarket_stats
            if (best, worst) != (stats.best_strategy, stats.worst_strategy):
                self.store.set_strategy_rankings(best, worst)
                logger.info(f"Strategy rankings: best={best[:40]!r} worst={worst[:40]!r}")
        return self.store.memory.polymarket_stats
