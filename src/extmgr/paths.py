"""Well-known filesystem locations for each scope."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from extmgr.config import Settings, get_settings
from extmgr.models import Scope


SCOPES: tuple[Scope, Scope] = ("global", "project")

SETTINGS_FILENAME = "settings.json"
METADATA_CACHE_FILENAME = "metadata.json"
AUTO_UPDATE_FILENAME = "auto-update.json"
HISTORY_FILENAME = "history.jsonl"


@dataclass(frozen=True)
class ExtmgrPaths:
    """Resolved locations for one working directory."""

    cwd: Path
    agent_dir: Path
    cache_dir: Path

    def settings_path(self, scope: Scope) -> Path:
        if scope == "project":
            return self.cwd / ".pi" / SETTINGS_FILENAME
        return self.agent_dir / SETTINGS_FILENAME

    def extensions_root(self, scope: Scope) -> Path:
        if scope == "project":
            return self.cwd / ".pi" / "extensions"
        return self.agent_dir / "extensions"

    def extensions_label(self, scope: Scope) -> str:
        if scope == "project":
            return ".pi/extensions"
        return "~/.pi/agent/extensions"

    def package_install_root(self, scope: Scope) -> Path:
        """Directory the host installs scope packages under (``npm/``, ``git/``)."""
        if scope == "project":
            return self.cwd / ".pi"
        return self.agent_dir

    @property
    def metadata_cache_path(self) -> Path:
        return self.cache_dir / METADATA_CACHE_FILENAME

    @property
    def auto_update_path(self) -> Path:
        return self.cache_dir / AUTO_UPDATE_FILENAME

    @property
    def history_path(self) -> Path:
        return self.cache_dir / HISTORY_FILENAME


def resolve_paths(settings: Settings | None = None, *, cwd: Path | None = None) -> ExtmgrPaths:
    resolved_settings = settings or get_settings()
    base = (cwd or Path.cwd()).resolve()
    return ExtmgrPaths(
        cwd=base,
        agent_dir=resolved_settings.resolved_agent_dir,
        cache_dir=resolved_settings.resolved_cache_dir,
    )
