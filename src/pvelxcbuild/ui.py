"""User-facing build output.

Every line goes through the log secret filter before it is printed, so
credentials registered by prepare() never reach the terminal.
"""

from __future__ import annotations

from rich.console import Console
from rich.markup import escape

from pvelxcbuild.utils.logging import get_logger, log_secret_filter

logger = get_logger(__name__)


class Ui:
    """Console sink for build progress, in the `==> name: message` format."""

    def __init__(self, name: str = "proxmox-lxc", console: Console | None = None):
        self.name = name
        self.console = console or Console(stderr=True, highlight=False)

    def _emit(self, text: str, style: str, prefix: str) -> None:
        text = log_secret_filter.redact(str(text))
        logger.debug(f"ui: {text}")
        for line in text.splitlines() or [""]:
            self.console.print(f"[{style}]{prefix}{escape(line)}[/{style}]")

    def say(self, message: str) -> None:
        self._emit(message, "bold green", f"==> {self.name}: ")

    def message(self, message: str) -> None:
        self._emit(message, "green", f"    {self.name}: ")

    def warn(self, message: str) -> None:
        self._emit(message, "yellow", f"==> {self.name}: ")

    def error(self, message: str) -> None:
        self._emit(message, "bold red", f"==> {self.name}: ")
