"""
Tests for the ingestion layer: response parsing and rate limiting.
"""
import pytest

from core.ingestion.managers.rate_limiter import ActionRateLimiter, RateLimiter
from core.ingestion.validators.response_validator import (
    is_skip_response,
    parse_market_cap,
    parse_price,
    parse_score_line,
    parse_score_response,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


SCAN_ANSWER = (
    "72|PEPE2|$0.001|$35k|$1200|+15%|strong momentum\n"
    "40|DEAD|$0.0001|$5k|$50|-80%|dying\n"
)


class TestScoreParsing:
    def test_two_candidates_ranked(self):
        result = parse_score_response(SCAN_ANSWER)
        assert [c.symbol for c in result.candidates] == ["PEPE2", "DEAD"]
        pepe, dead = result.candidates
        assert pepe.score == 72 and pepe.is_viable()
        assert dead.score == 40 and not dead.is_viable()
        assert pepe.market_cap == 35_000
        assert pepe.reason == "strong momentum"
        assert result.rejected == []

    def test_ranking_is_by_score(self):
        text = "10|LOW|$1|$1k|$1|0%|x\n90|HIGH|$1|$1k|$1|0%|y\n50|MID|$1|$1k|$1|0%|z"
        result = parse_score_response(text)
        assert [c.symbol for c in result.candidates] == ["HIGH", "MID", "LOW"]

    def test_malformed_lines_are_reported_not_raised(self):
        text = (
            "Here are the results:\n"
            "72|PEPE2|$0.001|$35k|$1200|+15%|strong momentum\n"
            "abc|BAD|$1|$1k|$1|0%|not a score\n"
            "150|HUGE|$1|$1k|$1|0%|out of range\n"
            "80|SHORT|$1\n"
            "\n"
        )
        result = parse_score_response(text)
        assert [c.symbol for c in result.candidates] == ["PEPE2"]
        assert len(result.rejected) == 4
        reasons = " ".join(r.reason for r in result.rejected)
        assert "not an integer" in reasons
        assert "outside 0-100" in reasons

    def test_empty_answer(self):
        result = parse_score_response("")
        assert result.is_empty
        assert result.rejected == []
        assert parse_score_response(None).is_empty

    def test_duplicate_symbol_keeps_highest_score(self):
        text = (
            "70|PEPE2|$0.001|$35k|$1200|+15%|first\n"
            "72|pepe2|$0.001|$35k|$1200|+15%|better\n"
            "65|PEPE2|$0.001|$35k|$1200|+15%|worse\n"
            "50|MID|$1|$1k|$1|0%|z"
        )
        result = parse_score_response(text)
        assert [(c.symbol, c.score) for c in result.candidates] == [("pepe2", 72), ("MID", 50)]
        assert [r.line for r in result.rejected] == [
            "70|PEPE2|$0.001|$35k|$1200|+15%|first",
            "65|PEPE2|$0.001|$35k|$1200|+15%|worse",
        ]
        assert all(r.reason == "duplicate symbol PEPE2" for r in result.rejected)

    def test_reason_with_pipes_is_kept(self):
        candidate = parse_score_line("65|FOO|$1|$10k|$5|+1%|good | but risky")
        assert candidate.reason == "good | but risky"

    def test_empty_symbol_rejected(self):
        with pytest.raises(ValueError):
            parse_score_line("65||$1|$10k|$5|+1%|no symbol")

    @pytest.mark.parametrize(
        "raw,expected",
        [("$35k", 35_000), ("$1.2m", 1_200_000), ("12,500", 12_500), ("n/a", 0.0)],
    )
    def test_market_cap_suffixes(self, raw, expected):
        assert parse_market_cap(raw) == pytest.approx(expected)


class TestPriceParsing:
    def test_dollar_price_in_sentence(self):
        result = parse_price("Current price is $2.10 on Base")
        assert result.ok
        assert result.price == pytest.approx(2.10)

    def test_bare_number(self):
        assert parse_price("0.00042").price == pytest.approx(0.00042)

    def test_no_number(self):
        result = parse_price("I could not find that token")
        assert not result.ok
        assert result.price is None
        assert not parse_price(None).ok

    def test_zero_is_not_ok(self):
        assert not parse_price("$0").ok


class TestSkipDetection:
    def test_skip_at_line_start(self):
        assert is_skip_response("SKIP - no market matches the strategy")
        assert is_skip_response("Checked 12 markets.\nskip: odds too thin")

    def test_skip_inside_sentence_is_not_skip(self):
        assert not is_skip_response("Placed $4 on YES, did not skip")
        assert not is_skip_response(None)


class TestRateLimiter:
    def test_window_fills_then_frees(self):
        clock = FakeClock()
        limiter = RateLimiter("trade", max_requests=2, time_window=60, clock=clock)

        for _ in range(2):
            assert limiter.check() == (True, 0.0)
            limiter.record()

        allowed, retry_after = limiter.check()
        assert not allowed
        assert retry_after == pytest.approx(60)

        clock.advance(45)
        allowed, retry_after = limiter.check()
        assert not allowed
        assert retry_after == pytest.approx(15)

        clock.advance(15)
        assert limiter.check()[0]
        assert limiter.get_remaining() == 2

    def test_stats(self):
        clock = FakeClock()
        limiter = RateLimiter("scan", max_requests=4, time_window=60, clock=clock)
        limiter.record()
        stats = limiter.get_stats()
        assert stats["current_requests"] == 1
        assert stats["remaining"] == 3
        assert stats["utilization_percent"] == pytest.approx(25.0)
        limiter.reset()
        assert limiter.get_reset_in() is None

    def test_buckets_are_per_action_and_user(self):
        clock = FakeClock()
        limiter = ActionRateLimiter({"trade": (1, 60)}, clock=clock)

        limiter.record("trade", "alice")
        assert not limiter.check("trade", "alice")[0]
        assert limiter.check("trade", "bob")[0]

    def test_unknown_action_not_limited(self):
        limiter = ActionRateLimiter({"trade": (1, 60)}, clock=FakeClock())
        for _ in range(5):
            limiter.record("other", "alice")
        assert limiter.check("other", "alice") == (True, 0.0)
