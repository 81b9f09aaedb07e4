from __future__ import annotations

from typing import Sequence

from rich.console import Console
from rich.prompt import Prompt

from .installer import ConflictStrategy


class TerminalDecider:
    """
    Asks the operator on the terminal. EOF, Ctrl-C and blank answers cancel.

    `Prompt.ask` blocks; the event loop (and any in-flight downloads) waits
    while the operator answers.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console(stderr=True)

    def _ask(self, message: str, choices: list[str], default: str | None = None) -> str | None:
        try:
            answer = Prompt.ask(message, choices=choices, default=default, console=self.console)
        except (EOFError, KeyboardInterrupt):
            self.console.print()
            return None
        answer = (answer or "").strip()
        return answer or None

    def choose_conflict_strategy(self, path: str, is_main_doc: bool) -> ConflictStrategy | None:
        choices = ["append", "overwrite", "skip"] if is_main_doc else ["overwrite", "skip"]
        answer = self._ask(f"{path} already exists", choices)
        if answer in choices:
            return answer  # type: ignore[return-value]
        return None

    def choose_targets(self, available: Sequence[str]) -> list[str]:
        options = list(available)
        answer = self._ask(
            f"Select targets to install ({', '.join(options)}, or 'all')",
            [*options, "all"],
            default="all",
        )
        if answer is None:
            return []
        if answer == "all":
            return options
        return [answer]
