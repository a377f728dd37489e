"""Subprocess collaborator used to talk to the host and registry CLIs."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from extmgr.core.logging.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ExecResult:
    code: int
    stdout: str
    stderr: str
    killed: bool = False

    @property
    def ok(self) -> bool:
        return self.code == 0 and not self.killed


class CommandRunner(Protocol):
    async def exec(
        self,
        command: str,
        args: list[str],
        *,
        timeout: float | None = None,
        cwd: Path | None = None,
    ) -> ExecResult: ...


class AsyncioCommandRunner:
    """Run commands with :func:`asyncio.create_subprocess_exec`.

    A timeout kills the process and is reported as an ordinary failed exit.
    """

    async def exec(
        self,
        command: str,
        args: list[str],
        *,
        timeout: float | None = None,
        cwd: Path | None = None,
    ) -> ExecResult:
        try:
            process = await asyncio.create_subprocess_exec(
                command,
                *args,
                cwd=str(cwd) if cwd else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            logger.warning(
                "Failed to start command",
                data={"command": command, "args": args, "error": str(exc)},
            )
            return ExecResult(code=127, stdout="", stderr=str(exc))

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except TimeoutError:
            process.kill()
            stdout, stderr = await process.communicate()
            logger.warning(
                "Command timed out",
                data={"command": command, "args": args, "timeout": timeout},
            )
            return ExecResult(
                code=process.returncode if process.returncode is not None else -1,
                stdout=stdout.decode("utf-8", errors="replace"),
                stderr=stderr.decode("utf-8", errors="replace") or f"timed out after {timeout}s",
                killed=True,
            )

        return ExecResult(
            code=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
