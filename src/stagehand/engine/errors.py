# Copyright (c) 2024 Stagehand Contributors
# MIT License

"""
Stagehand Error Classes.

All custom exceptions for clear error handling and exit codes.

Load-time errors (inventory, playbook, vault files) abort the run before any
host starts. Per-host errors (render failures, task failures, unreachable
hosts, timeouts) are recorded on that host's results and never escape the
host's stream.
"""

from __future__ import annotations

import enum
from typing import Any, Optional, Sequence


class ExitCode(enum.IntEnum):
    """Process exit codes for ``stagehand run``."""

    SUCCESS = 0
    GENERIC_ERROR = 1
    HOST_FAILED = 2
    PARSE_ERROR = 3
    HOST_UNREACHABLE = 4
    UNSUPPORTED_FEATURE = 5
    VAULT_ERROR = 6
    KEYBOARD_INTERRUPT = 130


class StagehandError(Exception):
    """Base exception for all Stagehand errors."""

    exit_code: int = ExitCode.GENERIC_ERROR

    def __init__(self, message: str, details: str | None = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}\n  Details: {self.details}"
        return self.message


class ParseError(StagehandError):
    """Error parsing inventory, playbook, or other input files."""

    exit_code: int = ExitCode.PARSE_ERROR

    def __init__(
        self,
        message: str,
        file_path: str | None = None,
        line: int | None = None,
        details: str | None = None,
    ) -> None:
        self.file_path = file_path
        self.line = line
        location = ""
        if file_path:
            location = f" in {file_path}"
            if line:
                location += f" at line {line}"
        super().__init__(f"Parse error{location}: {message}", details)


class UnsupportedFeatureError(StagehandError):
    """Error when a playbook uses a feature Stagehand does not implement."""

    exit_code: int = ExitCode.UNSUPPORTED_FEATURE

    def __init__(self, feature: str, suggestion: str | None = None) -> None:
        self.feature = feature
        msg = f"Unsupported feature: {feature}"
        if suggestion:
            msg += f"\n  Suggestion: {suggestion}"
        super().__init__(msg)


class InventoryError(ParseError):
    """Error in inventory file or host resolution."""

    def __init__(self, message: str, file_path: str | None = None) -> None:
        super().__init__(message, file_path=file_path)


class CyclicGroupError(InventoryError):
    """Group parent/child edges form a cycle."""

    def __init__(self, cycle: Sequence[str], file_path: str | None = None) -> None:
        self.cycle = list(cycle)
        super().__init__(
            f"Group dependency cycle detected: {' -> '.join(self.cycle)}",
            file_path=file_path,
        )


class DuplicateHostConflictError(InventoryError):
    """Two definitions give the same host name different connection identities."""

    def __init__(self, host: str, first: dict, second: dict) -> None:
        self.host = host
        self.first = first
        self.second = second
        super().__init__(
            f"Host '{host}' defined twice with conflicting connection settings: "
            f"{first} vs {second}"
        )


class RenderError(StagehandError):
    """Error rendering a Jinja2 template or resolving a variable."""

    exit_code: int = ExitCode.PARSE_ERROR

    def __init__(
        self,
        message: str,
        template: str | None = None,
        variable: str | None = None,
    ) -> None:
        self.template = template
        self.variable = variable

        details = None
        if template:
            # Truncate long templates
            truncated = template[:100] + "..." if len(template) > 100 else template
            details = f"Template: {truncated}"

        super().__init__(f"Template error: {message}", details)


class UndefinedVariableError(RenderError):
    """A template referenced a variable that is not defined in any scope."""

    def __init__(self, variable: str | None, template: str | None = None) -> None:
        what = f"'{variable}'" if variable else "variable"
        super().__init__(f"Undefined variable: {what} is undefined", template, variable)


class TaskFailure(StagehandError):
    """
    A task was classified as failed on a host.

    Instances are carried as the error context of the block interpreter
    rather than raised; ``result`` is the failing TaskResult.
    """

    exit_code: int = ExitCode.HOST_FAILED

    def __init__(self, host: str, task: str, message: str, result: Any = None) -> None:
        self.host = host
        self.task = task
        self.result = result
        super().__init__(f"Host {host} failed at task '{task}': {message}")


class UnreachableError(StagehandError):
    """Connection to a host could not be established or was lost."""

    exit_code: int = ExitCode.HOST_UNREACHABLE

    def __init__(
        self,
        host: str,
        message: str,
        connection_type: str | None = None,
        details: str | None = None,
    ) -> None:
        self.host = host
        self.connection_type = connection_type
        conn_info = f" ({connection_type})" if connection_type else ""
        super().__init__(f"Connection to {host}{conn_info} failed: {message}", details)


class TimeoutError(StagehandError):
    """A command or a whole play exceeded its time limit."""

    exit_code: int = ExitCode.HOST_FAILED

    def __init__(self, message: str, timeout: Optional[float] = None) -> None:
        self.timeout = timeout
        super().__init__(message)


class VaultError(StagehandError):
    """Base error for vault encryption/decryption problems."""

    exit_code: int = ExitCode.VAULT_ERROR


class VaultFormatError(VaultError):
    """The vault envelope is malformed."""


class WrongPassphraseError(VaultError):
    """No configured vault secret matches the envelope."""


class IntegrityError(VaultError):
    """The passphrase is right but the envelope was modified."""
