"""Answer sources for confirmations and menus.

Workflows never read from the terminal directly. They ask an
:class:`AnswerSource`, which is either interactive (Typer prompts) or preset
from command-line flags so that the same code path runs unattended and in
tests.
"""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol

import typer


class PromptError(RuntimeError):
    """Raised when an answer cannot be obtained."""


class AnswerSource(Protocol):
    """Supply answers to yes/no questions and menus."""

    def confirm(self, question: str, *, default: bool = False) -> bool:
        """Return the answer to a yes/no *question*."""

    def choose(self, question: str, options: Sequence[str], *, default: str | None = None) -> str:
        """Return one of *options*."""


class InteractiveAnswers:
    """Ask the operator on the terminal."""

    def confirm(self, question: str, *, default: bool = False) -> bool:
        return bool(typer.confirm(question, default=default))

    def choose(self, question: str, options: Sequence[str], *, default: str | None = None) -> str:
        if not options:
            raise PromptError("No options to choose from.")
        typer.echo(question)
        for index, option in enumerate(options, start=1):
            typer.echo(f"  {index}) {option}")
        default_index = options.index(default) + 1 if default in options else None
        while True:
            answer = typer.prompt("Select", default=default_index, type=int)
            if 1 <= answer <= len(options):
                return options[answer - 1]
            typer.echo(f"Enter a number between 1 and {len(options)}.")


@dataclass(slots=True)
class PresetAnswers:
    """Answer from flags; used for ``--yes`` and in tests.

    ``assume_yes`` answers every confirmation. ``choices`` are consumed in
    order by :meth:`choose`; when exhausted the default is used.
    """

    assume_yes: bool = False
    choices: list[str] = field(default_factory=list)
    asked: list[str] = field(default_factory=list)

    def confirm(self, question: str, *, default: bool = False) -> bool:
        self.asked.append(question)
        return True if self.assume_yes else default

    def choose(self, question: str, options: Sequence[str], *, default: str | None = None) -> str:
        self.asked.append(question)
        if self.choices:
            answer = self.choices.pop(0)
        elif default is not None:
            answer = default
        else:
            raise PromptError(f"No preset answer for: {question}")
        if answer not in options:
            raise PromptError(f"'{answer}' is not one of: {', '.join(options)}")
        return answer


def answers_for(*, assume_yes: bool, interactive: bool = True) -> AnswerSource:
    """Return the answer source matching the command-line flags."""
    if assume_yes or not interactive:
        return PresetAnswers(assume_yes=assume_yes)
    return InteractiveAnswers()


__all__ = ["AnswerSource", "InteractiveAnswers", "PresetAnswers", "PromptError", "answers_for"]
