"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Exit codes used by the CLI.

    Every fatal condition (missing docker, unreachable daemon, no usable image,
    credential generation failure, invalid configuration) maps to ``FAILURE``.
    A user declining the confirmation prompt exits with ``OK``.
    """

    OK = 0
    FAILURE = 1
