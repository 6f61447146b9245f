"""
Development transport that prints outgoing messages instead of sending SMS.

Implements the MessageTransport protocol; a real SMS provider plugs in the
same way.
"""

import itertools

import structlog
from rich.console import Console
from rich.panel import Panel

from ember.services.result import Result

logger = structlog.get_logger(__name__)


class ConsoleTransport:
    """Renders each message as a rich panel and hands back a local delivery id."""

    def __init__(self, sender_name: str = "Ember", console: Console | None = None) -> None:
        self.sender_name = sender_name
        self.console = console or Console()
        self.logger = logger.bind(component="console_transport")
        self._ids = itertools.count(1)
        self.sent: list[tuple[str, str]] = []

    async def send_message(self, identity: str, text: str) -> Result[str, Exception]:
        delivery_id = f"console-{next(self._ids)}"
        self.console.print(
            Panel(text, title=f"{self.sender_name} -> {identity}", subtitle=delivery_id)
        )
        self.sent.append((identity, text))
        self.logger.debug("message_printed", identity=identity, delivery_id=delivery_id)
        return Result.ok(delivery_id)
