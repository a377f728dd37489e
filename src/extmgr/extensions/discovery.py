"""Discovery and management of standalone local extensions.

Extensions live directly under ``~/.pi/agent/extensions`` (global) or
``.pi/extensions`` (project). A file or ``index`` entrypoint carrying a
``.disabled`` suffix is disabled; the filename is the only record of state.
"""

from __future__ import annotations

import re
import shutil
from dataclasses import dataclass
from pathlib import Path

from extmgr.core.exceptions import ExtensionNotFoundError, FilesystemError
from extmgr.core.logging.logger import get_logger
from extmgr.marketplace.formatting import truncate
from extmgr.models import ExtensionEntry, Scope, State, ToggleResult
from extmgr.paths import SCOPES, ExtmgrPaths

logger = get_logger(__name__)

DISABLED_SUFFIX = ".disabled"
SUMMARY_MAX_LENGTH = 80
NO_DESCRIPTION = "No description"

_ENABLED_FILE_RE = re.compile(r"\.(ts|js)$", re.IGNORECASE)
_DISABLED_FILE_RE = re.compile(r"\.(ts|js)\.disabled$", re.IGNORECASE)
_INDEX_FILE_RE = re.compile(r"^index\.(ts|js)$", re.IGNORECASE)

_DESCRIPTION_PATTERNS = (
    re.compile(
        r"registerCommand\(\s*[\"'`][^\"'`]+[\"'`]\s*,\s*\{[\s\S]*?"
        r"description\s*:\s*[\"'`]([^\"'`]+)[\"'`]"
    ),
    re.compile(r"registerTool\(\s*\{[\s\S]*?description\s*:\s*[\"'`]([^\"'`]+)[\"'`]"),
    re.compile(r"description\s*:\s*[\"'`]([^\"'`]+)[\"'`]"),
)
_BLOCK_COMMENT_RE = re.compile(r"^/\*+[\s\S]*?\*/")
_LINE_COMMENTS_RE = re.compile(r"^(?:[ \t]*//.*\n?)+")


@dataclass(frozen=True)
class RemovedExtension:
    path: Path
    directory: bool


def read_summary(path: Path) -> str:
    """Best-effort one-line description of an extension source file."""
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return NO_DESCRIPTION

    for pattern in _DESCRIPTION_PATTERNS:
        match = pattern.search(text)
        if match and match.group(1).strip():
            return truncate(match.group(1).strip(), SUMMARY_MAX_LENGTH)

    leading = text.lstrip()
    block = _BLOCK_COMMENT_RE.match(leading)
    if block:
        for line in block.group(0).splitlines():
            clean = re.sub(r"^\s*/\*+\s?", "", line)
            clean = re.sub(r"\*/$", "", clean)
            clean = re.sub(r"^\s*\*\s?", "", clean).strip()
            if clean:
                return truncate(clean, SUMMARY_MAX_LENGTH)

    comments = _LINE_COMMENTS_RE.match(leading)
    if comments:
        for line in comments.group(0).splitlines():
            clean = re.sub(r"^\s*//\s?", "", line).strip()
            if clean:
                return truncate(clean, SUMMARY_MAX_LENGTH)

    for line in text.splitlines():
        if line.strip():
            return truncate(line.strip(), SUMMARY_MAX_LENGTH)
    return NO_DESCRIPTION


def _make_entry(
    scope: Scope,
    active_path: Path,
    state: State,
    display_name: str,
) -> ExtensionEntry:
    disabled_path = active_path.with_name(active_path.name + DISABLED_SUFFIX)
    summary_source = active_path if state == "enabled" else disabled_path
    return ExtensionEntry(
        id=f"{scope}:{active_path}",
        scope=scope,
        state=state,
        active_path=active_path,
        disabled_path=disabled_path,
        display_name=display_name,
        summary=read_summary(summary_source),
    )


def _parse_top_level_file(root: Path, label: str, scope: Scope, name: str) -> ExtensionEntry | None:
    is_disabled = bool(_DISABLED_FILE_RE.search(name))
    is_enabled = bool(_ENABLED_FILE_RE.search(name)) and not name.endswith(DISABLED_SUFFIX)
    if not is_enabled and not is_disabled:
        return None

    active_name = name[: -len(DISABLED_SUFFIX)] if is_disabled else name
    return _make_entry(
        scope,
        root / active_name,
        "disabled" if is_disabled else "enabled",
        f"{label}/{active_name}",
    )


def _parse_directory_index(
    root: Path, label: str, scope: Scope, name: str
) -> ExtensionEntry | None:
    directory = root / name
    for extension in (".ts", ".js"):
        active_path = directory / f"index{extension}"
        display_name = f"{label}/{name}/index{extension}"
        if active_path.is_file():
            return _make_entry(scope, active_path, "enabled", display_name)
        if active_path.with_name(active_path.name + DISABLED_SUFFIX).is_file():
            return _make_entry(scope, active_path, "disabled", display_name)
    return None


def discover_in_root(root: Path, scope: Scope, label: str) -> list[ExtensionEntry]:
    try:
        children = sorted(root.iterdir())
    except FileNotFoundError:
        return []
    except OSError as exc:
        logger.warning(
            "Failed to read extensions directory",
            data={"root": str(root), "error": str(exc)},
        )
        return []

    found: list[ExtensionEntry] = []
    for child in children:
        if child.name.startswith("."):
            continue
        entry: ExtensionEntry | None = None
        if child.is_file():
            entry = _parse_top_level_file(root, label, scope, child.name)
        elif child.is_dir():
            entry = _parse_directory_index(root, label, scope, child.name)
        if entry is not None:
            found.append(entry)
    return found


def discover_extensions(paths: ExtmgrPaths) -> list[ExtensionEntry]:
    """Scan both roots, sort by display name and keep the first entry per id."""
    entries: list[ExtensionEntry] = []
    for scope in SCOPES:
        entries.extend(
            discover_in_root(paths.extensions_root(scope), scope, paths.extensions_label(scope))
        )

    entries.sort(key=lambda entry: entry.display_name)
    unique: dict[str, ExtensionEntry] = {}
    for entry in entries:
        unique.setdefault(entry.id, entry)
    return list(unique.values())


def set_extension_state(entry: ExtensionEntry, target: State) -> ToggleResult:
    """Rename between the active and disabled paths."""
    source, destination = (
        (entry.disabled_path, entry.active_path)
        if target == "enabled"
        else (entry.active_path, entry.disabled_path)
    )
    try:
        source.rename(destination)
    except OSError as exc:
        return ToggleResult.failure(str(exc))
    logger.debug("Extension state changed", data={"id": entry.id, "state": target})
    return ToggleResult.success()


def remove_local_extension(entry: ExtensionEntry, paths: ExtmgrPaths) -> RemovedExtension:
    """Delete an extension file, or its whole directory for an ``index`` entrypoint.

    Raises:
        ExtensionNotFoundError: neither the active nor disabled path exists.
        FilesystemError: the deletion itself failed.
    """
    if entry.active_path.exists():
        existing = entry.active_path
    elif entry.disabled_path.exists():
        existing = entry.disabled_path
    else:
        raise ExtensionNotFoundError("Extension file no longer exists", str(entry.active_path))

    parent = existing.parent
    base_name = existing.name
    if base_name.lower().endswith(DISABLED_SUFFIX):
        base_name = base_name[: -len(DISABLED_SUFFIX)]
    roots = {paths.extensions_root(scope) for scope in SCOPES}

    try:
        if _INDEX_FILE_RE.match(base_name) and parent not in roots:
            shutil.rmtree(parent)
            removed = RemovedExtension(path=parent, directory=True)
        else:
            existing.unlink(missing_ok=True)
            removed = RemovedExtension(path=existing, directory=False)
    except OSError as exc:
        raise FilesystemError(f"Failed to remove {existing}", str(exc)) from exc

    logger.info("Removed local extension", data={"path": str(removed.path)})
    return removed
