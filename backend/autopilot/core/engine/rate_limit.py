"""
Rate-Limit Detector
===================

Pattern-based detection of usage-limit and overload signals in stream
events and process output. The phrase list is a heuristic; keep it in
one place so it can be tuned against real traffic.
"""

import json
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

MAX_MESSAGE_LENGTH = 500
RESET_BUFFER_SECONDS = 60
MIN_RETRY_SECONDS = 60
MAX_RETRY_SECONDS = 24 * 60 * 60

RATE_LIMIT_PATTERNS = [
    re.compile(r"usage limit reached", re.IGNORECASE),
    re.compile(r"rate_limit_error", re.IGNORECASE),
    re.compile(r"rate limit", re.IGNORECASE),
    re.compile(r"too many requests", re.IGNORECASE),
    re.compile(r"overloaded", re.IGNORECASE),
    re.compile(r"hit your limit", re.IGNORECASE),
]

# "resets 11am (Asia/Seoul)", "reset 2:30pm (US/Eastern)"
RESET_TIME_PATTERN = re.compile(
    r"resets?\s+(\d{1,2})(?::(\d{2}))?\s*(am|pm)\s*\(([^)]+)\)",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class RateLimitInfo:
    detected: bool
    source: Optional[str] = None  # "stream_event" | "text_pattern" | "exit_code"
    message: Optional[str] = None
    retry_after_seconds: Optional[float] = None


NOT_DETECTED = RateLimitInfo(detected=False)


def parse_reset_time(text: str, now: Optional[datetime] = None) -> Optional[float]:
    """
    Seconds until the reset time named in a limit message.

    Args:
        text: Message possibly containing "resets <h>[:mm]am|pm (<zone>)"
        now: Current instant (timezone-aware); defaults to the wall clock

    Returns:
        Seconds to wait including a one minute buffer, or None if the
        message has no reset time, the zone is unknown, or the wait
        would exceed a day
    """
    match = RESET_TIME_PATTERN.search(text)
    if not match:
        return None

    hours = int(match.group(1))
    minutes = int(match.group(2) or 0)
    meridiem = match.group(3).lower()
    if meridiem == "pm" and hours != 12:
        hours += 12
    if meridiem == "am" and hours == 12:
        hours = 0

    try:
        zone = ZoneInfo(match.group(4).strip())
    except (ZoneInfoNotFoundError, ValueError):
        return None

    local = (now or datetime.now(zone)).astimezone(zone)
    reset_minutes = hours * 60 + minutes
    current_minutes = local.hour * 60 + local.minute

    if reset_minutes > current_minutes:
        diff = (reset_minutes - current_minutes) * 60
    else:
        # Reset is tomorrow in the target zone
        diff = (24 * 60 - current_minutes + reset_minutes) * 60

    diff += RESET_BUFFER_SECONDS
    diff = max(diff, MIN_RETRY_SECONDS)
    if diff > MAX_RETRY_SECONDS:
        return None
    return float(diff)


def _matches(text: str) -> bool:
    return any(pattern.search(text) for pattern in RATE_LIMIT_PATTERNS)


class RateLimitDetector:
    """Three independent checks returning a ``RateLimitInfo``."""

    def check_event(self, event: Dict[str, Any]) -> RateLimitInfo:
        event_type = event.get("type")
        is_error_event = event_type == "error" or (event_type == "result" and bool(event.get("is_error")))

        if is_error_event or event.get("subtype") == "rate_limit":
            serialized = json.dumps(event, default=str)
            if event.get("subtype") == "rate_limit" or _matches(serialized):
                return RateLimitInfo(
                    detected=True,
                    source="stream_event",
                    message=serialized[:MAX_MESSAGE_LENGTH],
                    retry_after_seconds=parse_reset_time(serialized),
                )
        return NOT_DETECTED

    def check_text(self, text: str) -> RateLimitInfo:
        if not text or not _matches(text):
            return NOT_DETECTED
        return RateLimitInfo(
            detected=True,
            source="text_pattern",
            message=text[:MAX_MESSAGE_LENGTH],
            retry_after_seconds=parse_reset_time(text),
        )

    def check_exit_code(self, code: Optional[int]) -> RateLimitInfo:
        # Exit status alone cannot tell a limit apart from any other failure
        return NOT_DETECTED
