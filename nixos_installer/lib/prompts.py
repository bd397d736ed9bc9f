from __future__ import annotations

import getpass
import logging
from typing import Callable, List, Optional, Sequence

from ..errors import ValidationError

logger = logging.getLogger(__name__)


class Prompter:
    """Operator interaction; refuses to prompt in non-interactive runs."""

    def __init__(
        self,
        *,
        non_interactive: bool = False,
        assume_yes: bool = False,
        input_fn: Callable[[str], str] = input,
        secret_fn: Callable[[str], str] = getpass.getpass,
        output_fn: Callable[[str], None] = print,
    ) -> None:
        self.non_interactive = non_interactive
        self.assume_yes = assume_yes
        self._input = input_fn
        self._secret = secret_fn
        self._print = output_fn

    def _require_tty(self, what: str) -> None:
        if self.non_interactive:
            raise ValidationError(f"{what} required in non-interactive mode")

    def say(self, text: str) -> None:
        self._print(text)

    def ask(self, prompt: str, *, default: Optional[str] = None) -> str:
        self._require_tty(prompt)
        suffix = f" [{default}]" if default else ""
        answer = self._input(f"{prompt}{suffix}: ").strip()
        return answer or (default or "")

    def choose(self, title: str, options: Sequence[str], *, labels: Optional[Sequence[str]] = None) -> str:
        """Numbered menu; returns the chosen option value."""

        self._require_tty(title)
        if not options:
            raise ValidationError(f"No choices available for {title}")
        shown: List[str] = list(labels or options)
        for i, label in enumerate(shown, start=1):
            self._print(f"  [{i}] {label}")
        raw = self._input(f"{title} [1-{len(options)}]: ").strip()
        if not raw.isdigit() or not 1 <= int(raw) <= len(options):
            raise ValidationError(f"Invalid choice for {title}: {raw!r}")
        return options[int(raw) - 1]

    def confirm(self, prompt: str, *, default: bool = False) -> bool:
        if self.non_interactive or self.assume_yes:
            return default or self.assume_yes
        hint = "[Y/n]" if default else "[y/N]"
        answer = self._input(f"{prompt} {hint}: ").strip().lower()
        if not answer:
            return default
        return answer.startswith("y")

    def secret(self, prompt: str, *, confirm: bool = True) -> str:
        self._require_tty(prompt)
        first = self._secret(f"{prompt}: ")
        if not first:
            raise ValidationError("Empty passphrase")
        if confirm and self._secret(f"{prompt} (again): ") != first:
            raise ValidationError("Passphrases do not match")
        return first
