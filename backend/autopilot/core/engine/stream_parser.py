"""
Stream Parser
=============

Turns the assistant CLI's newline-delimited JSON output into events.
Partial lines are buffered across chunks; malformed lines are dropped.
"""

import json
from typing import Any, Dict, List, Optional


def _parse_line(line: str) -> Optional[Dict[str, Any]]:
    line = line.strip()
    if not line:
        return None
    try:
        parsed = json.loads(line)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


class StreamParser:
    """Stateful NDJSON parser."""

    def __init__(self):
        self.buffer = ""

    def feed(self, chunk: str) -> List[Dict[str, Any]]:
        """
        Add a chunk of output and return every complete record in it.

        The trailing partial line (if any) is kept for the next call.
        """
        self.buffer += chunk
        *lines, self.buffer = self.buffer.split("\n")

        events = []
        for line in lines:
            event = _parse_line(line)
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> List[Dict[str, Any]]:
        """Parse whatever is left in the buffer as one final record."""
        try:
            event = _parse_line(self.buffer)
            return [event] if event is not None else []
        finally:
            self.buffer = ""
