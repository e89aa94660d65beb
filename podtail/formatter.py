"""
Log line filtering and rendering
"""

import json
from typing import Any, Dict, Optional

from rich.text import Text

from .models import FormattingPolicy, PodIdentity

TIMESTAMP_KEYS = ("ts", "timestamp", "time")
MESSAGE_KEYS = ("msg", "message", "log")
LEVEL_KEYS = ("level", "lvl", "severity")

LEVEL_STYLES = {
    'trace': 'dim',
    'debug': 'dim',
    'info': 'green',
    'warn': 'yellow',
    'warning': 'yellow',
    'error': 'red',
    'err': 'red',
    'fatal': 'bold red',
    'critical': 'bold red',
    'panic': 'bold red',
}


def maybe_parse_json(line: str) -> Optional[Any]:
    """Parse ``line`` as JSON, returning None when it is not valid JSON"""
    try:
        return json.loads(line)
    except ValueError:
        return None


def _first_string(value: Dict[str, Any], keys, default: str) -> str:
    for key in keys:
        found = value.get(key)
        if isinstance(found, str):
            return found
    return default


def get_pretty_json(value: Dict[str, Any]) -> Text:
    """Summarize a structured log record as ``[level] ts: msg``"""
    ts = _first_string(value, TIMESTAMP_KEYS, "no-ts")
    level = _first_string(value, LEVEL_KEYS, "INFO")
    msg = _first_string(value, MESSAGE_KEYS, "no-msg")

    return Text.assemble(
        (f"[{level}]", LEVEL_STYLES.get(level.lower(), "")),
        f" {ts}: {msg}",
    )


class ColorRegistry:
    """
    Hands out palette colors to pods

    Colors are assigned round-robin the first time a pod is seen and then
    remembered for the life of the process, so a pod that disappears and comes
    back keeps its color.
    """

    def __init__(self, palette):
        if not palette:
            raise ValueError("palette must contain at least one color")
        self.palette = tuple(palette)
        self._assigned: Dict[PodIdentity, str] = {}

    def color_for(self, pod: PodIdentity) -> str:
        color = self._assigned.get(pod)
        if color is None:
            color = self.palette[len(self._assigned) % len(self.palette)]
            self._assigned[pod] = color
        return color

    def __len__(self) -> int:
        return len(self._assigned)


class LogLineFormatter:
    """Applies the filter and JSON policy to raw log lines"""

    def __init__(self, policy: FormattingPolicy):
        self.policy = policy

    def accepts(self, line: str) -> bool:
        """True when the line passes the configured substring filter"""
        return not self.policy.filter_text or self.policy.filter_text in line

    def render(self, line: str) -> Optional[Text]:
        """
        Render a raw line for output

        Returns:
            The text to emit, or None when the line is filtered out
        """
        if not self.accepts(line):
            return None

        if self.policy.json_format:
            value = maybe_parse_json(line)
            if isinstance(value, dict):
                return get_pretty_json(value)
            if value is not None:
                return Text(json.dumps(value))

        # Text() never interprets markup, so brackets in log lines are kept as-is
        return Text(line)
