from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from extmgr.config import Settings
from extmgr.paths import ExtmgrPaths
from extmgr.process import ExecResult

Handler = Callable[[str, list[str]], ExecResult]

_ENV_VARS = (
    "EXTMGR_AGENT_DIR",
    "PI_CODING_AGENT_DIR",
    "EXTMGR_CACHE_DIR",
    "PI_EXTMGR_CACHE_DIR",
)


@dataclass
class RecordedCall:
    command: str
    args: list[str]
    timeout: float | None
    cwd: Path | None


@dataclass
class FakeRunner:
    """Scripted stand-in for the subprocess collaborator."""

    handler: Handler | None = None
    calls: list[RecordedCall] = field(default_factory=list)

    async def exec(
        self,
        command: str,
        args: list[str],
        *,
        timeout: float | None = None,
        cwd: Path | None = None,
    ) -> ExecResult:
        self.calls.append(RecordedCall(command, list(args), timeout, cwd))
        if self.handler is None:
            return ExecResult(code=0, stdout="", stderr="")
        return self.handler(command, list(args))


@pytest.fixture
def make_runner() -> Callable[..., FakeRunner]:
    def factory(handler: Handler | None = None) -> FakeRunner:
        return FakeRunner(handler=handler)

    return factory


@pytest.fixture
def settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Settings:
    monkeypatch.chdir(tmp_path)
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return Settings(agent_dir=tmp_path / "agent", cache_dir=tmp_path / "cache")


@pytest.fixture
def paths(tmp_path: Path) -> ExtmgrPaths:
    project = tmp_path / "project"
    project.mkdir()
    return ExtmgrPaths(
        cwd=project,
        agent_dir=tmp_path / "agent",
        cache_dir=tmp_path / "cache",
    )
