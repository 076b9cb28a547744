"""
Tests for observability, Prometheus metrics and owner notifications.
"""
import json

import httpx
import pytest

from monitoring.metrics_exporter import MetricsExporter
from monitoring.notifier import LogNotifier, TelegramNotifier, safe_notify
from monitoring.observability import AlertCategory, AlertLevel, ObservabilityLogger


@pytest.fixture
def exporter():
    return MetricsExporter()


class TestObservability:
    def test_decisions_are_buffered(self, observability):
        decision_id = observability.log_trade_decision(
            user_id="tester", action="trade", reasoning="Executed trade", success=True, latency_ms=120
        )
        recent = observability.get_recent_decisions()
        assert recent[-1].id == decision_id
        assert recent[-1].latency_ms == 120

    def test_decision_buffer_is_bounded(self, observability):
        for i in range(1005):
            observability.log_trade_decision("tester", "scan", f"scan {i}", True)
        assert len(observability.get_recent_decisions(limit=2000)) == 1000

    def test_alerts_most_recent_first(self, observability):
        observability.log_alert(AlertLevel.INFO, AlertCategory.EXECUTION_ERROR, "first")
        observability.log_alert(AlertLevel.WARNING, AlertCategory.RATE_LIMIT, "second")

        alerts = observability.get_alerts()
        assert [a.message for a in alerts] == ["second", "first"]
        assert [a.message for a in observability.get_alerts(level=AlertLevel.INFO)] == ["first"]

    def test_latency_thresholds(self, observability):
        observability.check_api_latency(1000, "trade")
        assert observability.get_alerts() == []

        observability.check_api_latency(6000, "trade")
        observability.check_api_latency(20000, "trade")
        levels = [a.level for a in observability.get_alerts()]
        assert levels == [AlertLevel.ERROR, AlertLevel.WARNING]

    def test_missed_scan(self, observability):
        observability.check_missed_scan(expected_at=1000, actual_at=1030)
        assert observability.get_alerts() == []

        observability.check_missed_scan(expected_at=1000, actual_at=1200)
        alert = observability.get_alerts()[0]
        assert alert.category == AlertCategory.MISSED_SCAN
        assert "200s" in alert.message

    def test_performance_metrics_from_closed_trades(self, observability):
        for pnl in (10.0, -5.0, 20.0):
            observability.log_trade_decision("tester", "sell", "exit", True, pnl=pnl, symbol="PEPE2")
        observability.log_trade_decision("tester", "scan", "scan", True)

        metrics = observability.get_performance_metrics()
        assert metrics.total_trades == 3
        assert metrics.winning_trades == 2
        assert metrics.total_pnl == pytest.approx(25.0)
        assert metrics.profit_factor == pytest.approx(6.0)

        report = observability.generate_report()
        assert "Total Trades: 3" in report
        assert "HEALTHY" in report

    def test_exporter_mirrors_events(self, exporter):
        observability = ObservabilityLogger(metrics_exporter=exporter)
        observability.log_trade_decision("tester", "trade", "ok", True, latency_ms=250)
        observability.log_alert(AlertLevel.WARNING, AlertCategory.RATE_LIMIT, "slow down")

        registry = exporter.registry
        assert registry.get_sample_value(
            "autotrader_executions_total", {"action": "trade", "outcome": "success"}
        ) == 1
        assert registry.get_sample_value(
            "autotrader_alerts_total", {"category": "rate_limit", "level": "warning"}
        ) == 1


class TestMetricsExporter:
    def test_instances_do_not_collide(self):
        first, second = MetricsExporter(), MetricsExporter()
        first.record_prediction_bet()
        assert first.registry.get_sample_value("autotrader_prediction_bets_total") == 1
        assert second.registry.get_sample_value("autotrader_prediction_bets_total") == 0

    def test_risk_gauges(self, exporter):
        exporter.update_risk(
            {"auto_trade_killed": True, "daily_trades": 4, "daily_loss": 12.5}, open_positions=2
        )
        registry = exporter.registry
        assert registry.get_sample_value("autotrader_kill_switch") == 1
        assert registry.get_sample_value("autotrader_open_positions") == 2
        assert registry.get_sample_value("autotrader_daily_loss_usd") == 12.5

    def test_latency_histogram(self, exporter):
        exporter.record_execution("scan", False, 1500)
        assert exporter.registry.get_sample_value(
            "autotrader_execution_latency_seconds_count", {"action": "scan"}
        ) == 1
        assert b"autotrader_executions_total" in exporter.render()

    def test_start_without_port_is_noop(self, exporter):
        assert exporter.start() is False


class TestNotifier:
    async def test_safe_notify_swallows_failures(self):
        async def broken(message):
            raise RuntimeError("chat unreachable")

        await safe_notify(broken, "hello")
        await safe_notify(None, "hello")

    async def test_log_notifier(self):
        await LogNotifier()("hello")

    async def test_telegram_posts_message(self):
        sent = []

        def handler(request):
            sent.append(request)
            return httpx.Response(200, json={"ok": True})

        notifier = TelegramNotifier(
            bot_token="123:abc",
            chat_id="42",
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        await notifier("🎉 *Take Profit Hit!*")
        await notifier.close()

        assert sent[0].url.path == "/bot123:abc/sendMessage"
        assert json.loads(sent[0].content)["chat_id"] == "42"

    async def test_telegram_http_error_raises(self):
        notifier = TelegramNotifier(
            bot_token="123:abc",
            chat_id="42",
            client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(403))),
        )
        with pytest.raises(httpx.HTTPStatusError):
            await notifier("hello")

    async def test_unconfigured_telegram_raises(self):
        with pytest.raises(RuntimeError):
            await TelegramNotifier(bot_token="", chat_id="")("hello")
