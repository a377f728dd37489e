"""Enable/disable state for package entrypoints, stored in ``settings.json``.

Each scope has one settings file whose ``packages`` array holds either a bare
source string (installed, unconfigured, fully enabled) or an object::

    {"source": "npm:demo@1.0.0", "extensions": ["-main.ts", "+extra.ts"]}

The ``extensions`` array is an ordered log of ``+path``/``-path`` markers; the
last marker for a path decides its state. A package whose ``extensions``,
``skills``, ``prompts`` and ``themes`` are all present and empty is disabled
as a whole.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from extmgr.core.exceptions import FilesystemError, StrictFormatError
from extmgr.core.logging.logger import get_logger
from extmgr.marketplace.source_utils import (
    atomic_write_json,
    normalize_relative_path,
    normalize_source,
)
from extmgr.models import Scope, State
from extmgr.paths import ExtmgrPaths

logger = get_logger(__name__)

RESOURCE_FILTER_KEYS = ("extensions", "skills", "prompts", "themes")


class UnconfiguredSource(BaseModel):
    """A bare string entry."""

    source: str

    model_config = ConfigDict(frozen=True)

    def dump(self) -> str:
        return self.source


class ConfiguredSource(BaseModel):
    """An object entry carrying filter arrays; unknown keys are preserved."""

    source: str
    extensions: list[str] | None = None
    skills: list[str] | None = None
    prompts: list[str] | None = None
    themes: list[str] | None = None

    model_config = ConfigDict(extra="allow")

    @field_validator(*RESOURCE_FILTER_KEYS, mode="before")
    @classmethod
    def _keep_string_tokens(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [item for item in value if isinstance(item, str)]
        return value

    @property
    def fully_disabled(self) -> bool:
        return all(getattr(self, key) == [] for key in RESOURCE_FILTER_KEYS)

    def dump(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


@dataclass(frozen=True)
class OpaqueEntry:
    """An entry that did not validate; written back verbatim unless a mutation targets it."""

    raw: Any

    @property
    def source(self) -> str | None:
        if isinstance(self.raw, dict) and isinstance(self.raw.get("source"), str):
            return self.raw["source"]
        return None

    def dump(self) -> Any:
        return self.raw

    def recover(self) -> ConfiguredSource | None:
        """Rebuild an object entry with a string source, dropping non-array filters."""
        if self.source is None:
            return None
        cleaned = {
            key: value
            for key, value in self.raw.items()
            if key not in RESOURCE_FILTER_KEYS or isinstance(value, list)
        }
        return ConfiguredSource.model_validate(cleaned)


PackageSetting = UnconfiguredSource | ConfiguredSource
SettingsEntry = UnconfiguredSource | ConfiguredSource | OpaqueEntry


def parse_package_entry(raw: Any) -> SettingsEntry:
    if isinstance(raw, str):
        return UnconfiguredSource(source=raw)
    if isinstance(raw, dict) and isinstance(raw.get("source"), str):
        try:
            return ConfiguredSource.model_validate(raw)
        except ValidationError:
            return OpaqueEntry(raw)
    return OpaqueEntry(raw)


def split_marker(token: str) -> tuple[str, str] | None:
    if not token or token[0] not in "+-":
        return None
    return token[0], normalize_relative_path(token[1:])


def make_marker(relative_path: str, target: State) -> str:
    sign = "+" if target == "enabled" else "-"
    return f"{sign}{normalize_relative_path(relative_path)}"


def fold_markers(markers: Iterable[str] | None, relative_path: str) -> State:
    """Replay the marker log for one path; the last marker wins."""
    target = normalize_relative_path(relative_path)
    state: State = "enabled"
    for token in markers or ():
        parsed = split_marker(token)
        if parsed is None or parsed[1] != target:
            continue
        state = "enabled" if parsed[0] == "+" else "disabled"
    return state


def replace_marker(markers: Iterable[str] | None, relative_path: str, target: State) -> list[str]:
    """Drop every marker for ``relative_path`` and append the new one."""
    normalized = normalize_relative_path(relative_path)
    kept = [
        token
        for token in markers or ()
        if (parsed := split_marker(token)) is None or parsed[1] != normalized
    ]
    kept.append(make_marker(normalized, target))
    return kept


@dataclass
class SettingsDocument:
    """A loaded settings file; keys other than ``packages`` round-trip untouched."""

    path: Path
    data: dict[str, Any] = field(default_factory=dict)
    packages: list[SettingsEntry] = field(default_factory=list)

    def find(self, source: str) -> int | None:
        wanted = normalize_source(source)
        for index, entry in enumerate(self.packages):
            if entry.source is not None and normalize_source(entry.source) == wanted:
                return index
        return None

    def entry_at(self, index: int) -> PackageSetting:
        entry = self.packages[index]
        if isinstance(entry, OpaqueEntry):
            recovered = entry.recover()
            assert recovered is not None
            return recovered
        return entry

    def get(self, source: str) -> PackageSetting | None:
        index = self.find(source)
        if index is None:
            return None
        return self.entry_at(index)

    def to_json(self) -> dict[str, Any]:
        payload = dict(self.data)
        payload["packages"] = [entry.dump() for entry in self.packages]
        return payload


def load_settings_document(path: Path, *, strict: bool = False) -> SettingsDocument:
    """Read a settings file.

    Missing or empty files load as empty. In strict mode malformed content
    raises :class:`StrictFormatError` instead of loading as empty.
    """
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return SettingsDocument(path=path)
    except UnicodeDecodeError as exc:
        if strict:
            raise StrictFormatError(f"Invalid settings format in {path}", str(exc)) from exc
        logger.warning("Settings file is not UTF-8", data={"path": str(path)})
        return SettingsDocument(path=path)
    except OSError as exc:
        if strict:
            raise FilesystemError(f"Failed to read {path}", str(exc)) from exc
        logger.warning("Failed to read settings file", data={"path": str(path), "error": str(exc)})
        return SettingsDocument(path=path)

    if not raw.strip():
        return SettingsDocument(path=path)

    try:
        payload = json.loads(raw)
    except ValueError as exc:
        if strict:
            raise StrictFormatError(f"Invalid JSON in {path}", str(exc)) from exc
        return SettingsDocument(path=path)

    if not isinstance(payload, dict):
        if strict:
            raise StrictFormatError(f"Invalid settings format in {path}: expected a JSON object")
        return SettingsDocument(path=path)

    packages = payload.get("packages", [])
    if not isinstance(packages, list):
        if strict:
            raise StrictFormatError(
                f"Invalid settings format in {path}: expected packages to be an array"
            )
        packages = []

    data = {key: value for key, value in payload.items() if key != "packages"}
    return SettingsDocument(
        path=path,
        data=data,
        packages=[parse_package_entry(item) for item in packages],
    )


def save_settings_document(document: SettingsDocument) -> None:
    try:
        atomic_write_json(document.path, document.to_json())
    except OSError as exc:
        raise FilesystemError(f"Failed to write {document.path}", str(exc)) from exc


class SettingsFilterStore:
    """Reads and mutates per-scope package filter markers."""

    def __init__(self, paths: ExtmgrPaths) -> None:
        self._paths = paths

    @property
    def paths(self) -> ExtmgrPaths:
        return self._paths

    def settings_path(self, scope: Scope) -> Path:
        return self._paths.settings_path(scope)

    def load(self, scope: Scope, *, strict: bool = False) -> SettingsDocument:
        return load_settings_document(self.settings_path(scope), strict=strict)

    def save(self, document: SettingsDocument) -> None:
        save_settings_document(document)

    def get_state(self, package_source: str, relative_path: str, scope: Scope) -> State:
        entry = self.load(scope).get(package_source)
        if not isinstance(entry, ConfiguredSource):
            return "enabled"
        return fold_markers(entry.extensions, relative_path)

    def set_state(
        self,
        package_source: str,
        relative_path: str,
        scope: Scope,
        target: State,
    ) -> None:
        """Record ``target`` for one entrypoint.

        Raises:
            StrictFormatError: the settings file exists but is malformed.
            FilesystemError: the settings file could not be read or written.
        """
        document = self.load(scope, strict=True)
        index = document.find(package_source)

        if index is None:
            document.packages.append(
                ConfiguredSource(
                    source=package_source,
                    extensions=[make_marker(relative_path, target)],
                )
            )
        else:
            existing = document.entry_at(index)
            if isinstance(existing, UnconfiguredSource):
                updated = ConfiguredSource(source=existing.source, extensions=[])
            else:
                updated = existing.model_copy(deep=True)
            updated.extensions = replace_marker(updated.extensions, relative_path, target)
            document.packages[index] = updated

        self.save(document)
        logger.debug(
            "Package entrypoint state changed",
            data={"source": package_source, "path": relative_path, "scope": scope, "state": target},
        )

    def get_resource_state(
        self,
        package_source: str,
        filter_key: str,
        relative_path: str,
        scope: Scope,
    ) -> State:
        """State of a skill, prompt or theme path from its filter array."""
        entry = self.load(scope).get(package_source)
        if not isinstance(entry, ConfiguredSource) or filter_key not in RESOURCE_FILTER_KEYS:
            return "enabled"
        return fold_markers(getattr(entry, filter_key), relative_path)

    def is_package_disabled(self, package_source: str, scope: Scope) -> bool:
        entry = self.load(scope).get(package_source)
        return isinstance(entry, ConfiguredSource) and entry.fully_disabled

    def set_package_disabled(self, package_source: str, scope: Scope, disabled: bool) -> None:
        """Disable a whole package, or revert its entry to a bare source string.

        Re-enabling discards every per-path marker the entry carried.
        """
        document = self.load(scope, strict=True)
        index = document.find(package_source)

        if disabled:
            if index is None:
                document.packages.append(disabled_entry(package_source))
            else:
                existing = document.entry_at(index)
                document.packages[index] = disabled_entry(existing.source)
        elif index is not None:
            existing = document.entry_at(index)
            document.packages[index] = UnconfiguredSource(source=existing.source)

        self.save(document)
        logger.debug(
            "Package state changed",
            data={"source": package_source, "scope": scope, "disabled": disabled},
        )


def disabled_entry(source: str) -> ConfiguredSource:
    return ConfiguredSource(source=source, extensions=[], skills=[], prompts=[], themes=[])
