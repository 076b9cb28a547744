"""
Tests for the execution layer: risk guard, execution safety and the
position monitor.
"""
import asyncio
import time
from datetime import datetime, timedelta

import httpx
import pytest
from loguru import logger

from conftest import failed
from core.ingestion.managers.rate_limiter import ActionRateLimiter
from execution.bankr_client import PromptResult
from execution.execution_safety import (
    ErrorType,
    ExecutionRequest,
    ExecutionSafetyManager,
    generate_request_id,
)
from execution.position_monitor import PositionMonitor
from execution.risk_guard import RiskGuard, RiskLimits
from models import TradeAction, TradeEntry, TradeStatus, now_ms
from monitoring.observability import AlertCategory


class WallClock:
    def __init__(self, start: datetime = datetime(2026, 3, 1, 12, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def request(action_type="trade", **params) -> ExecutionRequest:
    return ExecutionRequest(
        id=generate_request_id(action_type, params),
        type=action_type,
        user_id="tester",
        params=params,
    )


# ----------------------------------------------------------------------
# Risk guard
# ----------------------------------------------------------------------


class TestRiskGuard:
    def test_daily_trade_limit_resets_next_day(self):
        clock = WallClock()
        guard = RiskGuard(RiskLimits(max_trades_per_day=3), clock=clock)

        for _ in range(3):
            assert guard.can_trade(5, 1000).allowed
            guard.record_trade(1.0, 1000)

        check = guard.can_trade(5, 1000)
        assert not check.allowed
        assert "Daily trade limit" in check.reason

        clock.advance(days=1)
        assert guard.can_trade(5, 1000).allowed
        assert guard.get_status()["daily_trades"] == 0

    def test_kill_switch_latches_until_reset(self):
        guard = RiskGuard(clock=WallClock())

        guard.record_trade(-60.0, 100.0)
        assert guard.auto_trade_killed

        # a later win does not re-enable trading
        guard.record_trade(100.0, 100.0)
        assert guard.auto_trade_killed
        check = guard.can_trade(5, 100)
        assert not check.allowed
        assert "Manual reset required" in check.reason

        guard.reset_kill_switch()
        assert guard.can_trade(5, 100).allowed

    def test_cooldown_after_loss_streak(self):
        clock = WallClock()
        guard = RiskGuard(clock=clock)

        for _ in range(3):
            guard.record_trade(-1.0, 1000.0)

        check = guard.can_trade(5, 1000)
        assert not check.allowed
        assert "Cooldown active" in check.reason
        assert "5 minutes remaining" in check.reason

        clock.advance(minutes=5)
        assert guard.can_trade(5, 1000).allowed

    def test_position_size_limit(self):
        guard = RiskGuard(clock=WallClock())
        check = guard.can_trade(200, 1000)
        assert not check.allowed
        assert "exceeds limit" in check.reason

    def test_daily_loss_limit(self):
        guard = RiskGuard(RiskLimits(max_daily_loss_usd=10, drawdown_kill_switch_pct=100), clock=WallClock())
        guard.record_trade(-12.0, 1000.0)
        assert guard.is_daily_loss_exceeded()
        assert "Daily loss limit" in guard.can_trade(5, 1000).reason

    def test_win_resets_loss_streak(self):
        guard = RiskGuard(clock=WallClock())
        guard.record_trade(-1.0, 1000.0)
        guard.record_trade(-1.0, 1000.0)
        guard.record_trade(2.0, 1000.0)
        assert guard.consecutive_losses == 0
        assert guard.get_status()["total_drawdown"] == pytest.approx(1.0)


# ----------------------------------------------------------------------
# Execution safety
# ----------------------------------------------------------------------


class TestExecutionSafety:
    async def test_concurrent_duplicate_is_prevented(self, safety):
        release = asyncio.Event()
        calls = 0

        async def operation():
            nonlocal calls
            calls += 1
            await release.wait()
            return "done"

        req = request(symbol="PEPE2")
        first = asyncio.create_task(safety.safe_execute(req, operation))
        await asyncio.sleep(0)
        assert safety.is_pending(req.id)

        second = await safety.safe_execute(req, operation)
        assert not second.success
        assert second.error_message == "Duplicate execution prevented"

        release.set()
        result = await first
        assert result.success and result.data == "done"
        assert calls == 1
        assert not safety.is_pending(req.id)
        assert safety.get_stats()["duplicates_prevented"] == 1

    async def test_network_errors_are_retried_with_backoff(self, observability):
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        manager = ExecutionSafetyManager(
            observability=observability, backoffs={"network": 2.0}, sleep=fake_sleep
        )
        attempts = 0

        async def operation():
            nonlocal attempts
            attempts += 1
            if attempts <= 2:
                raise RuntimeError("read ECONNRESET")
            return "filled"

        result = await manager.safe_execute(request(symbol="PEPE2"), operation)
        assert result.success
        assert result.data == "filled"
        assert result.retry_count == 2
        assert sleeps == [2.0, 2.0]
        assert sum(sleeps) >= 2 * manager.backoffs["network"]

    async def test_retry_waits_real_time(self, observability):
        backoff = 0.05
        manager = ExecutionSafetyManager(observability=observability, backoffs={"network": backoff})
        attempts = 0

        async def operation():
            nonlocal attempts
            attempts += 1
            if attempts <= 2:
                raise RuntimeError("ECONNRESET")
            return "ok"

        start = time.monotonic()
        result = await manager.safe_execute(request(symbol="X"), operation)
        elapsed = time.monotonic() - start

        assert result.success and result.retry_count == 2
        # small slack for event loop clock resolution
        assert elapsed >= 2 * backoff - 0.005

    async def test_terminal_error_not_retried(self, safety):
        attempts = 0

        async def operation():
            nonlocal attempts
            attempts += 1
            raise RuntimeError("Insufficient balance for this trade")

        result = await safety.safe_execute(request(symbol="PEPE2"), operation)
        assert not result.success
        assert result.error.type == ErrorType.INSUFFICIENT_BALANCE
        assert not result.error.retryable
        assert result.retry_count == 0
        assert attempts == 1

    async def test_retries_are_bounded(self, safety):
        attempts = 0

        async def operation():
            nonlocal attempts
            attempts += 1
            raise RuntimeError("fetch failed")

        result = await safety.safe_execute(request(symbol="PEPE2"), operation)
        assert not result.success
        assert result.error.type == ErrorType.NETWORK
        assert result.retry_count == 3
        assert attempts == 4

    async def test_completed_result_is_cached(self, safety):
        attempts = 0

        async def operation():
            nonlocal attempts
            attempts += 1
            return attempts

        req = request(symbol="PEPE2")
        first = await safety.safe_execute(req, operation)
        second = await safety.safe_execute(req, operation)
        assert not first.cached
        assert second.cached
        assert second.data == 1
        assert attempts == 1

        safety.clear_cache()
        third = await safety.safe_execute(req, operation)
        assert third.data == 2

    async def test_cache_entries_expire(self, observability):
        now = [0.0]
        manager = ExecutionSafetyManager(observability=observability, clock=lambda: now[0])

        async def operation():
            return "fresh"

        req = request(symbol="PEPE2")
        await manager.safe_execute(req, operation)
        now[0] += 3601
        result = await manager.safe_execute(req, operation)
        assert not result.cached

    async def test_rate_limit_rejects_without_calling(self, observability):
        manager = ExecutionSafetyManager(
            observability=observability,
            rate_limiter=ActionRateLimiter({"trade": (1, 60)}),
        )
        attempts = 0

        async def operation():
            nonlocal attempts
            attempts += 1
            return "ok"

        assert (await manager.safe_execute(request(symbol="A"), operation)).success
        limited = await manager.safe_execute(request(symbol="B"), operation)

        assert not limited.success
        assert limited.error.type == ErrorType.RATE_LIMIT
        assert limited.error_message.startswith("Rate limit exceeded. Try again in")
        assert attempts == 1
        assert observability.get_alerts()[0].category == AlertCategory.RATE_LIMIT

    def test_classify_errors(self, safety):
        req = httpx.Request("POST", "https://api.example.test/agent/prompt")
        too_many = httpx.HTTPStatusError(
            "Too many requests", request=req, response=httpx.Response(429, request=req)
        )
        bad = httpx.HTTPStatusError(
            "Bad request", request=req, response=httpx.Response(400, request=req)
        )

        assert safety.classify_error(httpx.ConnectError("refused", request=req)).type == ErrorType.NETWORK
        assert safety.classify_error(asyncio.TimeoutError()).type == ErrorType.NETWORK
        assert safety.classify_error(too_many).type == ErrorType.RATE_LIMIT
        assert safety.classify_error(bad).type == ErrorType.INVALID_PARAMS
        assert safety.classify_error(RuntimeError("Trading halted on this pair")).type == ErrorType.MARKET_CLOSED
        assert safety.classify_error(RuntimeError("not enough funds")).type == ErrorType.INSUFFICIENT_BALANCE

        system = safety.classify_error(RuntimeError("x" * 500))
        assert system.type == ErrorType.SYSTEM
        assert system.retryable
        assert len(system.message) == 200

    def test_request_id_is_deterministic(self):
        a = generate_request_id("trade", {"side": "buy", "symbol": "PEPE2"})
        b = generate_request_id("trade", {"symbol": "PEPE2", "side": "buy"})
        c = generate_request_id("trade", {"side": "sell", "symbol": "PEPE2"})
        assert a == b
        assert a != c
        assert a.startswith("trade_")


# ----------------------------------------------------------------------
# Position monitor
# ----------------------------------------------------------------------


def open_trade(store, symbol="PEPE2", price="1.00", amount="$5") -> TradeEntry:
    return store.log_trade(
        TradeEntry(
            id=f"trade_{symbol}",
            token=symbol,
            symbol=symbol,
            action=TradeAction.BUY,
            amount=amount,
            price=price,
            timestamp=now_ms(),
            reason="Score 72/100: strong momentum",
            status=TradeStatus.OPEN,
        )
    )


@pytest.fixture
def monitor(fake_prompt, store, safety, risk_guard, notifier):
    return PositionMonitor(
        fake_prompt, store, safety, risk_guard,
        notify=notifier, portfolio_value=lambda: 1000.0, pause_seconds=0,
    )


class TestPositionMonitor:
    async def test_take_profit_sells_half(self, monitor, fake_prompt, store, notifier, risk_guard):
        trade = open_trade(store)
        fake_prompt.on("current price", "$2.10")

        await monitor.monitor_positions()

        sells = fake_prompt.calls_matching("Sell")
        assert sells == ["Sell 50% of my PEPE2 position on Base"]
        closed = store.get_trade(trade.id)
        assert closed.status == TradeStatus.CLOSED
        assert closed.pnl == "110.00"
        assert closed.exit_price == "2.1"
        assert "Take Profit Hit" in notifier.messages[0]
        assert risk_guard.get_status()["daily_trades"] == 1

    async def test_stop_loss_sells_all(self, monitor, fake_prompt, store, notifier, risk_guard):
        trade = open_trade(store)
        fake_prompt.on("current price", "The price is $0.50")

        await monitor.monitor_positions()

        assert fake_prompt.calls_matching("Sell") == ["Sell all of my PEPE2 on Base"]
        assert store.get_trade(trade.id).pnl == "-50.00"
        assert "Stop Loss Triggered" in notifier.messages[0]
        # $5 position, -50%, fully sold
        assert risk_guard.get_status()["daily_loss"] == pytest.approx(2.5)

    async def test_no_stop_loss_after_take_profit_close(self, monitor, fake_prompt, store):
        store.update_settings({"takeProfitPct": -100, "stopLossPct": 10})
        open_trade(store)
        fake_prompt.on("current price", "$0.50")

        await monitor.monitor_positions()

        assert len(fake_prompt.calls_matching("Sell")) == 1
        assert fake_prompt.calls_matching("Sell")[0].startswith("Sell 50%")

    async def test_inside_band_holds(self, monitor, fake_prompt, store, notifier):
        trade = open_trade(store)
        fake_prompt.on("current price", "$1.20")

        await monitor.monitor_positions()

        assert fake_prompt.calls_matching("Sell") == []
        assert store.get_trade(trade.id).is_open
        assert notifier.messages == []

    async def test_unparseable_prices_are_skipped(self, monitor, fake_prompt, store):
        open_trade(store, symbol="NOPRICE", price=None)
        priced = open_trade(store, symbol="VAGUE")
        fake_prompt.on("current price", "I could not find a price")

        await monitor.monitor_positions()

        # the trade without an entry price never reaches the prompt
        assert len(fake_prompt.calls) == 1
        assert store.get_trade(priced.id).is_open

    async def test_failed_sell_keeps_position_open(self, monitor, fake_prompt, store, notifier):
        trade = open_trade(store)
        fake_prompt.on("current price", "$2.10").on("Sell", failed("Insufficient balance"))

        await monitor.monitor_positions()

        assert store.get_trade(trade.id).is_open
        assert notifier.messages == []

    async def test_no_positions_no_prompts(self, monitor, fake_prompt):
        await monitor.monitor_positions()
        assert fake_prompt.calls == []

    async def test_overlapping_cycle_is_refused(self, store, safety, risk_guard):
        started = asyncio.Event()
        release = asyncio.Event()
        calls = []

        async def slow_prompt(text, thread_id=None):
            calls.append(text)
            started.set()
            await release.wait()
            return PromptResult(success=True, response="$1.20")

        open_trade(store)
        monitor = PositionMonitor(slow_prompt, store, safety, risk_guard, pause_seconds=0)
        first = asyncio.create_task(monitor.monitor_positions())
        await started.wait()

        assert monitor.is_monitoring
        assert await monitor.monitor_positions() is None
        assert len(calls) == 1

        release.set()
        await first
        assert not monitor.is_monitoring
        assert len(calls) == 1

    async def test_error_on_one_position_does_not_stop_the_cycle(
        self, monitor, fake_prompt, store, monkeypatch
    ):
        open_trade(store, symbol="BOOM")
        open_trade(store, symbol="PEPE2")
        fake_prompt.on("current price", "$2.10")
        errors = []
        sink = logger.add(lambda message: errors.append(message), level="ERROR")

        close_trade = store.close_trade

        def flaky_close(trade_id, *args, **kwargs):
            if trade_id == "trade_BOOM":
                raise RuntimeError("disk on fire")
            return close_trade(trade_id, *args, **kwargs)

        monkeypatch.setattr(store, "close_trade", flaky_close)
        try:
            await monitor.monitor_positions()
        finally:
            logger.remove(sink)

        assert len(fake_prompt.calls_matching("Sell 50%")) == 2
        assert store.get_trade("trade_BOOM").is_open
        assert store.get_trade("trade_PEPE2").status == TradeStatus.CLOSED
        assert any("Error monitoring BOOM" in str(m) for m in errors)
        assert not monitor.is_monitoring
