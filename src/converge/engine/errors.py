# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge Error Classes.

All custom exceptions for clear error handling and exit codes.
Exit codes follow ansible-playbook so wrappers can treat both tools alike.
"""

from __future__ import annotations

import enum


class ExitCode(enum.IntEnum):
    """Standard exit codes matching ansible-playbook behavior."""

    SUCCESS = 0
    GENERIC_ERROR = 1
    HOST_FAILED = 2
    PARSE_ERROR = 3
    UNSUPPORTED_FEATURE = 4
    KEYBOARD_INTERRUPT = 130


class ConvergeError(Exception):
    """Base exception for all Converge errors."""

    exit_code: int = ExitCode.GENERIC_ERROR

    def __init__(self, message: str, details: str | None = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}\n  Details: {self.details}"
        return self.message


class ParseError(ConvergeError):
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


class InventoryError(ParseError):
    """Malformed or cyclic group graph, or an unknown host reference."""

    def __init__(self, message: str, file_path: str | None = None) -> None:
        super().__init__(message, file_path=file_path)


class UnsupportedFeatureError(ConvergeError):
    """Error when a playbook uses a feature Converge does not implement."""

    exit_code: int = ExitCode.UNSUPPORTED_FEATURE

    def __init__(self, feature: str, suggestion: str | None = None) -> None:
        self.feature = feature
        msg = f"Unsupported feature: {feature}"
        if suggestion:
            msg += f"\n  Suggestion: {suggestion}"
        super().__init__(msg)


class VaultError(ConvergeError):
    """Vault data could not be decrypted."""


class VaultFormatError(VaultError):
    """The vault envelope is malformed (header, hex body or sections)."""


class VaultAuthenticationError(VaultError):
    """HMAC mismatch: wrong passphrase or tampered ciphertext."""

class TemplateError(ConvergeError):
    """A template or ``when`` expression could not be rendered."""

    exit_code: int = ExitCode.PARSE_ERROR

    MAX_SOURCE = 100

    def __init__(self, message: str, template: str | None = None) -> None:
        self.template = template
        details = None
        if template:
            shown = template if len(template) <= self.MAX_SOURCE else template[:self.MAX_SOURCE] + "..."
            details = f"Template: {shown}"
        super().__init__(f"Template error: {message}", details)


class ConnectivityError(ConvergeError):
    """A connection to a host could not be established or was lost."""

    exit_code: int = ExitCode.HOST_FAILED

    def __init__(self, host: str, message: str, connection_type: str | None = None) -> None:
        self.host = host
        self.connection_type = connection_type
        via = f" via {connection_type}" if connection_type else ""
        super().__init__(f"{host} unreachable{via}: {message}")


class ModuleExecutionError(ConvergeError):
    """A module raised instead of returning a failed result."""

    exit_code: int = ExitCode.HOST_FAILED

    def __init__(
        self,
        module: str,
        host: str,
        message: str,
        rc: int | None = None,
        stderr: str | None = None,
    ) -> None:
        self.module = module
        self.host = host
        self.rc = rc
        self.stderr = stderr
        super().__init__(f"{module} on {host}: {message}", f"rc={rc}" if rc is not None else None)


class PreconditionError(ModuleExecutionError):
    """An explicit assertion task did not hold."""


class TaskTimeoutError(ConvergeError):
    """A remote invocation exceeded the configured task timeout."""

    exit_code: int = ExitCode.HOST_FAILED

    def __init__(self, host: str, task: str, timeout: float) -> None:
        self.host = host
        self.task = task
        self.timeout = timeout
        super().__init__(f"Task '{task}' on {host} timed out after {timeout:g}s")
