"""Audit log of extension and package changes."""

from __future__ import annotations

import json
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Literal, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from extmgr.core.logging.logger import get_logger
from extmgr.models import Scope, State

logger = get_logger(__name__)

ChangeAction = Literal[
    "extension_toggle",
    "package_install",
    "package_update",
    "package_remove",
    "cache_clear",
]
CHANGE_ACTIONS: tuple[ChangeAction, ...] = (
    "extension_toggle",
    "package_install",
    "package_update",
    "package_remove",
    "cache_clear",
)


class ChangeEntry(BaseModel):
    action: ChangeAction
    success: bool
    timestamp: float = Field(default_factory=lambda: time.time() * 1000)
    extension_id: str | None = None
    from_state: State | None = None
    to_state: State | None = None
    package_source: str | None = None
    package_name: str | None = None
    version: str | None = None
    scope: Scope | None = None
    error: str | None = None

    model_config = ConfigDict(extra="ignore")


class ChangeLog(Protocol):
    """Append-only store of :class:`ChangeEntry` records, oldest first."""

    def append(self, entry: ChangeEntry) -> None: ...

    def entries(self) -> list[ChangeEntry]: ...


class InMemoryChangeLog:
    """Ephemeral change log for tests and one-shot runs."""

    def __init__(self, entries: list[ChangeEntry] | None = None) -> None:
        self._entries: list[ChangeEntry] = list(entries or [])

    def append(self, entry: ChangeEntry) -> None:
        self._entries.append(entry)

    def entries(self) -> list[ChangeEntry]:
        return list(self._entries)


class JsonlChangeLog:
    """One JSON object per line; unreadable lines are skipped on load."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def append(self, entry: ChangeEntry) -> None:
        line = entry.model_dump_json(exclude_none=True)
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._path, "a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except OSError as exc:
            logger.warning(
                "Failed to append change history",
                data={"path": str(self._path), "error": str(exc)},
            )

    def entries(self) -> list[ChangeEntry]:
        try:
            with open(self._path, "rb") as handle:
                lines = handle.readlines()
        except FileNotFoundError:
            return []
        except OSError as exc:
            logger.warning(
                "Failed to read change history",
                data={"path": str(self._path), "error": str(exc)},
            )
            return []

        entries: list[ChangeEntry] = []
        for line in lines:
            if not line.strip():
                continue
            try:
                entries.append(ChangeEntry.model_validate(json.loads(line.decode("utf-8"))))
            except (ValueError, ValidationError):
                continue
        return entries


def log_extension_toggle(
    log: ChangeLog,
    extension_id: str,
    from_state: State,
    to_state: State,
    success: bool,
    error: str | None = None,
) -> None:
    log.append(
        ChangeEntry(
            action="extension_toggle",
            extension_id=extension_id,
            from_state=from_state,
            to_state=to_state,
            success=success,
            error=error,
        )
    )


def log_package_change(
    log: ChangeLog,
    action: ChangeAction,
    source: str,
    name: str,
    success: bool,
    *,
    version: str | None = None,
    scope: Scope | None = None,
    error: str | None = None,
) -> None:
    log.append(
        ChangeEntry(
            action=action,
            package_source=source,
            package_name=name,
            version=version,
            scope=scope,
            success=success,
            error=error,
        )
    )


def recent_changes(log: ChangeLog, limit: int = 10) -> list[ChangeEntry]:
    if limit <= 0:
        return []
    return log.entries()[-limit:]


def format_change_entry(entry: ChangeEntry) -> str:
    when = datetime.fromtimestamp(entry.timestamp / 1000).strftime("%H:%M:%S")
    icon = "✓" if entry.success else "✗"
    version = entry.version

    match entry.action:
        case "extension_toggle":
            text = f"{entry.extension_id}: {entry.from_state} → {entry.to_state}"
        case "package_install":
            text = f"Installed {entry.package_name}{f'@{version}' if version else ''}"
        case "package_update":
            text = f"Updated {entry.package_name}{f' → @{version}' if version else ''}"
        case "package_remove":
            text = f"Removed {entry.package_name}"
        case "cache_clear":
            text = "Cache cleared"

    line = f"[{when}] {icon} {text}"
    if entry.error:
        line += f" ({entry.error})"
    return line


@dataclass(frozen=True)
class ChangeStats:
    total: int
    successful: int
    failed: int
    by_action: dict[ChangeAction, int] = field(default_factory=dict)


def change_stats(log: ChangeLog) -> ChangeStats:
    entries = log.entries()
    counts = Counter(entry.action for entry in entries)
    successful = sum(1 for entry in entries if entry.success)
    return ChangeStats(
        total=len(entries),
        successful=successful,
        failed=len(entries) - successful,
        by_action={action: counts.get(action, 0) for action in CHANGE_ACTIONS},
    )
