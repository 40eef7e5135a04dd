"""Interactive choices during a restore.

The orchestrator only talks to the ``Prompter`` interface, so tests and
non-interactive runs can supply answers without a terminal.
"""
from abc import ABC, abstractmethod
from typing import Callable, Optional, Sequence


class Prompter(ABC):
    """Enumerate options and confirm destructive steps."""

    @abstractmethod
    def choose(self, question: str, options: Sequence[str]) -> Optional[str]:
        """Return the chosen option, or None to cancel."""
        pass

    @abstractmethod
    def confirm(self, question: str) -> bool:
        """Return True to proceed."""
        pass


class ConsolePrompter(Prompter):
    """Prompter reading answers from standard input."""

    def __init__(
        self,
        input_func: Callable[[str], str] = input,
        output_func: Callable[[str], None] = print,
    ):
        self._input = input_func
        self._print = output_func

    def choose(self, question: str, options: Sequence[str]) -> Optional[str]:
        self._print(question)
        for i, option in enumerate(options, start=1):
            self._print(f"  {i}) {option}")
        while True:
            try:
                answer = self._input(f"Choice [1-{len(options)}]: ").strip()
            except EOFError:
                return None
            if answer.isdigit() and 1 <= int(answer) <= len(options):
                return options[int(answer) - 1]
            if answer in options:
                return answer
            self._print("Invalid choice")

    def confirm(self, question: str) -> bool:
        try:
            answer = self._input(f"{question} (y/N): ").strip().lower()
        except EOFError:
            return False
        return answer in ("y", "yes")


class ScriptedPrompter(Prompter):
    """Answers from pre-recorded responses (non-interactive runs and tests)."""

    def __init__(self, choices: Sequence[Optional[str]] = (), confirmations: Sequence[bool] = ()):
        self.choices = list(choices)
        self.confirmations = list(confirmations)
        self.asked: list[str] = []

    def choose(self, question: str, options: Sequence[str]) -> Optional[str]:
        self.asked.append(question)
        return self.choices.pop(0) if self.choices else None

    def confirm(self, question: str) -> bool:
        self.asked.append(question)
        return self.confirmations.pop(0) if self.confirmations else False


class AssumeYesPrompter(Prompter):
    """Confirms everything and selects "all" (``restore --yes``)."""

    def choose(self, question: str, options: Sequence[str]) -> Optional[str]:
        return "all" if "all" in options else None

    def confirm(self, question: str) -> bool:
        return True
