"""
Autopilot - Rate-Limit Detector Tests
=====================================
"""

from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

from autopilot.core.engine.rate_limit import RateLimitDetector, parse_reset_time


@pytest.fixture
def detector() -> RateLimitDetector:
    return RateLimitDetector()


class TestCheckText:

    @pytest.mark.parametrize("text", [
        "Claude AI usage limit reached|1700000000",
        "Error: rate limit exceeded",
        "HTTP 429 Too Many Requests",
        "API is overloaded, try later",
        "You've hit your limit",
        '{"type": "rate_limit_error"}',
    ])
    def test_detects_known_phrases(self, detector: RateLimitDetector, text: str):
        info = detector.check_text(text)
        assert info.detected is True
        assert info.source == "text_pattern"

    @pytest.mark.parametrize("text", ["", "all tests passed", "limit the scope of the change"])
    def test_ignores_other_text(self, detector: RateLimitDetector, text: str):
        assert detector.check_text(text).detected is False

    def test_message_truncated_to_500(self, detector: RateLimitDetector):
        info = detector.check_text("rate limit " + "x" * 2000)
        assert info.detected is True
        assert len(info.message) == 500


class TestCheckEvent:

    def test_error_event_with_phrase(self, detector: RateLimitDetector):
        info = detector.check_event({"type": "error", "error": {"message": "Rate limit hit"}})
        assert info.detected is True
        assert info.source == "stream_event"

    def test_error_result_with_phrase(self, detector: RateLimitDetector):
        event = {"type": "result", "is_error": True, "result": "Claude AI usage limit reached"}
        assert detector.check_event(event).detected is True

    def test_rate_limit_subtype_always_detected(self, detector: RateLimitDetector):
        assert detector.check_event({"type": "system", "subtype": "rate_limit"}).detected is True

    def test_successful_result_mentioning_phrase_ignored(self, detector: RateLimitDetector):
        event = {"type": "result", "is_error": False, "result": "Added rate limit middleware"}
        assert detector.check_event(event).detected is False

    def test_text_delta_ignored(self, detector: RateLimitDetector):
        event = {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "rate limit"}}
        assert detector.check_event(event).detected is False

    def test_exit_code_alone_never_detects(self, detector: RateLimitDetector):
        assert detector.check_exit_code(1).detected is False
        assert detector.check_exit_code(None).detected is False


class TestResetTime:

    def test_later_today(self):
        now = datetime(2024, 5, 1, 9, 0, tzinfo=ZoneInfo("UTC"))
        assert parse_reset_time("limit resets 11am (UTC)", now) == 2 * 3600 + 60

    def test_wraps_to_tomorrow(self):
        now = datetime(2024, 5, 1, 23, 0, tzinfo=ZoneInfo("UTC"))
        assert parse_reset_time("resets 1am (UTC)", now) == 2 * 3600 + 60

    def test_minutes_and_pm(self):
        now = datetime(2024, 5, 1, 14, 0, tzinfo=ZoneInfo("UTC"))
        assert parse_reset_time("resets 2:30pm (UTC)", now) == 30 * 60 + 60

    def test_converts_into_named_zone(self):
        # 09:00 UTC is 18:00 in Seoul
        now = datetime(2024, 5, 1, 9, 0, tzinfo=ZoneInfo("UTC"))
        assert parse_reset_time("resets 7pm (Asia/Seoul)", now) == 3600 + 60

    def test_unknown_zone(self):
        assert parse_reset_time("resets 11am (Mars/Olympus)") is None

    def test_no_reset_phrase(self):
        assert parse_reset_time("rate limit") is None

    def test_hint_flows_into_detection(self, detector: RateLimitDetector):
        info = detector.check_text("usage limit reached, resets 11am (UTC)")
        assert info.retry_after_seconds is not None
        assert 60 <= info.retry_after_seconds <= 24 * 3600
