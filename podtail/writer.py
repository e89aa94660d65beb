"""
Console output for merged pod logs
"""

import asyncio
from typing import Optional

import structlog
from rich.console import Console
from rich.text import Text

from .exceptions import WriterError
from .formatter import ColorRegistry, LogLineFormatter
from .models import LogEvent

logger = structlog.get_logger(__name__)


class OutputWriter:
    """Single consumer of the output channel. Writes lines in arrival order."""

    def __init__(self,
                 channel: asyncio.Queue,
                 formatter: LogLineFormatter,
                 colors: ColorRegistry,
                 console: Optional[Console] = None):
        self.channel = channel
        self.formatter = formatter
        self.colors = colors
        self.console = console or Console(soft_wrap=True, highlight=False)

        self.lines_written = 0
        self.lines_filtered = 0

    def format_event(self, event: LogEvent) -> Optional[Text]:
        """Prefix the rendered line with the pod name in its color, or None if filtered"""
        body = self.formatter.render(event.line)
        if body is None:
            return None
        return Text.assemble((event.pod.name, self.colors.color_for(event.pod)), " ", body)

    def emit(self, event: LogEvent) -> bool:
        """
        Write one event to the console

        Returns:
            True if a line was written, False if it was filtered out

        Raises:
            WriterError: If the console cannot be written to
        """
        text = self.format_event(event)
        if text is None:
            self.lines_filtered += 1
            return False

        try:
            self.console.print(text, soft_wrap=True, highlight=False, markup=False, emoji=False)
        except OSError as e:
            raise WriterError(f"Cannot write to console: {e}") from e

        self.lines_written += 1
        return True

    async def run(self) -> None:
        """Drain the channel forever. Only returns by cancellation or WriterError."""
        while True:
            event = await self.channel.get()
            try:
                self.emit(event)
            finally:
                self.channel.task_done()

    async def drain(self) -> None:
        """Wait until every queued event has been written"""
        await self.channel.join()
