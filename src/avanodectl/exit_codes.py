"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI."""

    OK = 0
    VALIDATION = 2
    PRECONDITION = 3
    PROVIDER = 4
    ROLLED_BACK = 5
    FATAL = 6
