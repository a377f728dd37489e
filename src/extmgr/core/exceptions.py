"""Error taxonomy for the extension manager."""

from __future__ import annotations

from collections.abc import Sequence


class ExtmgrError(Exception):
    """Base exception for extmgr errors."""

    def __init__(self, message: str, details: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class ParseFailure(ExtmgrError):
    """Subprocess text or JSON could not be parsed."""


class ExtensionNotFoundError(ExtmgrError):
    """An expected extension file or directory no longer exists."""


class StrictFormatError(ExtmgrError):
    """A settings file exists but is not valid JSON or not a JSON object.

    Raised instead of silently discarding the file so user edits are never lost.
    """


class FilesystemError(ExtmgrError):
    """Permission or IO failure while mutating local state."""


class SubprocessFailure(ExtmgrError):
    """An external tool exited with a non-zero status."""

    def __init__(
        self,
        command: Sequence[str],
        code: int,
        stdout: str = "",
        stderr: str = "",
        *,
        action: str | None = None,
    ) -> None:
        self.command = list(command)
        self.code = code
        self.stdout = stdout
        self.stderr = stderr
        self.action = action or " ".join(self.command[:2])
        super().__init__(f"{self.action} failed", self.describe())

    def describe(self) -> str:
        return describe_failure(self.code, self.stdout, self.stderr)


def describe_failure(code: int, stdout: str, stderr: str) -> str:
    return stderr.strip() or stdout.strip() or f"exit {code}"
