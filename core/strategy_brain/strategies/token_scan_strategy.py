"""
Token Scan Strategy
Finds low-cap tokens through the prompt API, scores them, and buys the best
"""
from typing import Callable, List, Optional

from loguru import logger

import config as cfg
from core.ingestion.validators.response_validator import TokenCandidate, parse_score_response
from core.strategy_brain.strategies.base_strategy import PromptStrategy
from execution.bankr_client import PromptFn
from execution.execution_safety import ExecutionSafetyManager
from execution.risk_guard import RiskGuard
from models import TradeAction, TradeEntry, TradeStatus, now_ms
from monitoring.notifier import NotifyFn
from storage.memory_store import MemoryStore, new_id


SCORING_CONTRACT = "SCORE|symbol|price|marketcap|volume24h|change24h|reason"


def score_emoji(score: int) -> str:
    if score >= 70:
        return "🟢"
    if score >= 50:
        return "🟡"
    return "🔴"


class TokenScanStrategy(PromptStrategy):
    """
    Low-cap token scanner.

    Workflow:
    1. Ask for tokens under the market-cap ceiling with real volume
    2. Ask for a pipe-delimited score per token and parse it
    3. Rank; score >= VIABLE_SCORE is viable
    4. With auto-trade on, buy the best viable tokens into free position slots
    5. Report the top candidates to the owner
    """

    def __init__(
        self,
        prompt: PromptFn,
        store: MemoryStore,
        safety: ExecutionSafetyManager,
        risk_guard: RiskGuard,
        notify: Optional[NotifyFn] = None,
        portfolio_value: Optional[Callable[[], float]] = None,
        user_id: str = cfg.AGENT_USER_ID,
    ):
        """
        Initialize token scanner.

        Args:
            risk_guard: Consulted before every buy
            portfolio_value: Current portfolio value in USD for position sizing checks
        """
        super().__init__("token_scan", prompt, store, safety, notify, user_id)
        self.risk_guard = risk_guard
        self.portfolio_value = portfolio_value or (lambda: cfg.PORTFOLIO_VALUE_USD)

        self._is_scanning = False
        self._buys_attempted = 0

        logger.info(f"Initialized Token Scan Strategy on {cfg.SPOT_CHAIN}")

    @property
    def is_scanning(self) -> bool:
        return self._is_scanning

    async def scan_market(self) -> str:
        """
        Run one scan cycle.

        Returns:
            Report text (never raises)
        """
        if self._is_scanning:
            return "Scan already in progress..."

        self._is_scanning = True
        try:
            return await self._scan()
        except Exception as e:
            logger.exception(f"Scan error: {e}")
            return f"❌ Failed: scan error: {e}"
        finally:
            self._is_scanning = False

    async def _scan(self) -> str:
        cycle = self._next_cycle()
        settings = self.store.settings
        max_cap = settings.max_market_cap
        cap_str = f"{max_cap / 1000:.0f}"

        logger.info("=" * 60)
        logger.info(f"🔍 Market scan #{cycle}: tokens under ${max_cap} market cap")
        logger.info("=" * 60)

        scan = await self._execute(
            "scan",
            f"Find me new and trending tokens on {cfg.SPOT_CHAIN} with a market cap under ${max_cap}. "
            f"For each token, provide: name, symbol/ticker, current price, market cap, 24h volume, "
            f"and 24h price change. Focus on tokens with real volume (>$500 24h), not dead tokens. "
            f"List up to 10 tokens, sorted by volume. Format as a numbered list.",
            max_market_cap=max_cap,
        )
        if not scan.success:
            return f"Scan failed: {scan.error_message}"

        self.store.mark_scanned()

        candidates = await self._score_candidates(self.response_text(scan))
        if not candidates:
            logger.info("📭 No candidates parsed this scan")
            report = f"📭 No viable candidates found under ${cap_str}k mcap"
            await self._notify(report)
            return report

        viable = [c for c in candidates if c.is_viable(cfg.VIABLE_SCORE)]

        lines = [
            "🔍 *Market Scan Complete*",
            "",
            f"Found {len(candidates)} tokens under ${cap_str}k mcap",
            f"{len(viable)} scored {cfg.VIABLE_SCORE}+ (viable)",
            "",
        ]
        for c in candidates[:cfg.REPORT_TOP_N]:
            lines.append(f"{score_emoji(c.score)} *{c.symbol}*: Score {c.score}/100")
            lines.append(f"   Price: {c.price} | MCap: ${c.market_cap:,.0f}")
            lines.append(f"   Vol: {c.volume_24h} | 24h: {c.change_24h}")
            lines.append(f"   {c.reason}")
            lines.append("")

        if settings.auto_trade_enabled and viable:
            open_count = len(self.store.get_open_positions())
            slots = settings.max_open_positions - open_count
            if slots > 0:
                to_buy = viable[:slots]
                lines.append(f"🎯 *Auto-buying {len(to_buy)} token(s):*")
                for candidate in to_buy:
                    lines.append(await self.execute_buy(candidate))
            else:
                lines.append(
                    f"⚠️ Max open positions ({settings.max_open_positions}) reached. Skipping buys."
                )
        elif viable:
            lines.append(f"💡 Auto-trade is OFF. Enable to auto-buy tokens scoring {cfg.VIABLE_SCORE}+.")

        report = "\n".join(lines).rstrip()
        await self._notify(report)
        return report

    async def _score_candidates(self, token_list: str) -> List[TokenCandidate]:
        result = await self._execute(
            "research",
            "Based on this token list, score each token from 0-100 on investment potential. "
            "Consider: volume relative to market cap, price momentum, holder distribution, "
            "liquidity depth, and risk. For each token, respond in this exact format (one per line):\n"
            f"{SCORING_CONTRACT}\n\n"
            f"Token list:\n{token_list}\n\n"
            "Rules:\n"
            "- Score 80+: Strong buy signal (high volume, good momentum, decent liquidity)\n"
            "- Score 60-79: Moderate opportunity (some positive signals)\n"
            "- Score 40-59: Risky (low liquidity or mixed signals)\n"
            "- Score <40: Avoid (rug risk, dead volume, or declining)\n"
            "- Be conservative. Most tokens should score below 60.",
            purpose="score",
        )
        if not result.success:
            return []

        parsed = parse_score_response(self.response_text(result))
        for rejected in parsed.rejected:
            logger.debug(f"Skipped scoring line ({rejected.reason}): {rejected.line!r}")

        for c in parsed.candidates:
            self.store.update_token_memory(
                c.symbol,
                last_researched=now_ms(),
                research_summary=c.reason,
                score=c.score,
                market_cap=f"{c.market_cap:.0f}",
                volume_24h=c.volume_24h,
                last_price=c.price,
            )

        logger.info(
            f"Scored {len(parsed.candidates)} candidate(s), "
            f"dropped {len(parsed.rejected)} malformed line(s)"
        )
        return parsed.candidates

    async def execute_buy(self, candidate: TokenCandidate) -> str:
        """
        Buy the configured amount of one candidate.

        Returns:
            One report line
        """
        settings = self.store.settings
        amount = settings.max_buy_amount

        check = self.risk_guard.can_trade(settings.buy_amount_usd, self.portfolio_value())
        if not check.allowed:
            logger.warning(f"Risk guard blocked buy of {candidate.symbol}: {check.reason}")
            return f"⛔ Skipped {candidate.symbol}: {check.reason}"

        self._buys_attempted += 1
        result = await self._execute(
            "trade",
            f"Buy ${amount} of {candidate.symbol} on {cfg.SPOT_CHAIN}",
            side="buy",
            symbol=candidate.symbol,
            amount=amount,
        )
        if result.cached:
            # this cycle already submitted the same buy; no new position
            logger.warning(f"Buy of {candidate.symbol} already submitted this cycle")
            return f"⚠️ Skipped {candidate.symbol}: buy already submitted this cycle"

        self.store.log_trade(
            TradeEntry(
                id=new_id("trade"),
                token=candidate.name,
                symbol=candidate.symbol,
                action=TradeAction.BUY,
                amount=f"${amount}",
                price=candidate.price,
                market_cap=f"{candidate.market_cap:.0f}",
                timestamp=now_ms(),
                reason=f"Score {candidate.score}/100: {candidate.reason}",
                external_response=self.response_text(result) or result.error_message,
                status=TradeStatus.OPEN if result.success else TradeStatus.FAILED,
            )
        )

        if result.success:
            return f"✅ Bought ${amount} of {candidate.symbol} (score: {candidate.score})"
        return f"❌ Failed to buy {candidate.symbol}: {result.error_message}"

    async def research_token(self, token: str) -> str:
        """Manual deep-dive on one token; upserts its research summary."""
        self._next_cycle()
        symbol = token.strip().upper()
        result = await self._execute(
            "research",
            f"Give me a comprehensive analysis of {token} on {cfg.SPOT_CHAIN}:\n"
            "1. Current price and market cap\n"
            "2. 24h volume and price change\n"
            "3. Holder distribution (top holders %)\n"
            "4. Liquidity depth\n"
            "5. Social sentiment\n"
            "6. Risk assessment (1-10)\n"
            "7. Overall investment score (0-100)\n"
            "Be honest and conservative in your assessment.",
            purpose="manual_research",
            symbol=symbol,
        )
        if not result.success:
            return f"❌ Failed: research failed: {result.error_message}"

        text = self.response_text(result)
        self.store.update_token_memory(
            symbol,
            last_researched=now_ms(),
            research_summary=text,
        )
        return text or "No data"

    def get_stats(self) -> dict:
        stats = super().get_stats()
        stats["buys_attempted"] = self._buys_attempted
        stats["is_scanning"] = self._is_scanning
        return stats
