"""Entrypoints and resources declared by installed packages."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any
from urllib.parse import unquote, urlparse

from extmgr.core.exceptions import ExtmgrError
from extmgr.core.logging.logger import get_logger
from extmgr.extensions.discovery import read_summary
from extmgr.marketplace.formatting import truncate
from extmgr.marketplace.source_utils import (
    normalize_relative_path,
    normalize_source,
    parse_registry_source,
    parse_vcs_source,
    read_json_file,
)
from extmgr.models import (
    InstalledPackage,
    PackageExtensionEntry,
    PackageResourceEntry,
    ResourceType,
    Scope,
)
from extmgr.packages.settings_store import (
    SettingsFilterStore,
    UnconfiguredSource,
    disabled_entry,
)
from extmgr.paths import SCOPES, ExtmgrPaths

logger = get_logger(__name__)

MANIFEST_KEY = "pi"

RESOURCE_TYPES: dict[str, ResourceType] = {
    "skills": "skill",
    "agents": "agent",
    "prompts": "prompt",
    "themes": "theme",
}

_DRIVE_RE = re.compile(r"^[A-Za-z]:[\\/]")
_GITHUB_REPO_RE = re.compile(r"github\.com[:/](.+?)(?:\.git)?/?$")
_DESCRIPTION_LINE_RE = re.compile(r"description:\s*(.+)")


def package_root(package: InstalledPackage, cwd: Path) -> Path | None:
    """Directory holding the package's ``package.json``, when it can be located."""
    if package.resolved_path:
        return Path(package.resolved_path).expanduser().resolve()

    source = normalize_source(package.source)
    if source.startswith("file://"):
        parsed = urlparse(source)
        if not parsed.path:
            return None
        return Path(unquote(parsed.path)).resolve()
    if source.startswith(("/", "\\\\")) or _DRIVE_RE.match(source):
        return Path(source).resolve()
    if source.startswith(("./", "../", ".\\", "..\\")):
        return (cwd / source).resolve()
    if source.startswith("~/"):
        return Path(source).expanduser().resolve()
    return None


def read_manifest(root: Path) -> dict[str, Any] | None:
    try:
        manifest = read_json_file(root / "package.json")
    except (OSError, ValueError):
        return None
    return manifest if isinstance(manifest, dict) else None


def _manifest_section(manifest: dict[str, Any] | None) -> dict[str, Any]:
    if manifest is None:
        return {}
    section = manifest.get(MANIFEST_KEY)
    return section if isinstance(section, dict) else {}


def discover_entrypoints(root: Path) -> list[str]:
    """Declared ``pi.extensions`` paths, else ``index.ts``, else ``index.js``."""
    declared = _manifest_section(read_manifest(root)).get("extensions")
    if isinstance(declared, list):
        entries = [normalize_relative_path(item) for item in declared if isinstance(item, str)]
        if entries:
            return entries

    for candidate in ("index.ts", "index.js"):
        if (root / candidate).is_file():
            return [candidate]
    return []


def discover_package_extensions(
    packages: list[InstalledPackage],
    paths: ExtmgrPaths,
    store: SettingsFilterStore,
) -> list[PackageExtensionEntry]:
    entries: list[PackageExtensionEntry] = []
    for package in packages:
        root = package_root(package, paths.cwd)
        if root is None:
            continue

        for extension_path in discover_entrypoints(root):
            absolute_path = (root / extension_path).resolve()
            summary = (
                read_summary(absolute_path) if absolute_path.exists() else "package extension"
            )
            entries.append(
                PackageExtensionEntry(
                    id=f"pkg-ext:{package.scope}:{package.source}:{extension_path}",
                    package_source=package.source,
                    package_name=package.name,
                    package_scope=package.scope,
                    extension_path=extension_path,
                    absolute_path=absolute_path,
                    display_name=f"{package.name}/{extension_path}",
                    summary=summary,
                    state=store.get_state(package.source, extension_path, package.scope),
                )
            )

    entries.sort(key=lambda entry: entry.display_name)
    return entries


def _resource_summary(path: Path, default: str) -> str:
    candidate = path / "SKILL.md" if path.is_dir() else path
    try:
        content = candidate.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return default
    match = _DESCRIPTION_LINE_RE.search(content)
    if match is None:
        return default
    return truncate(match.group(1).strip(), 80)


def discover_package_resources(
    packages: list[InstalledPackage],
    paths: ExtmgrPaths,
    store: SettingsFilterStore | None = None,
) -> list[PackageResourceEntry]:
    """Skills, agents, prompts and themes declared under the ``pi`` manifest key.

    With a ``store``, each state is folded from the matching filter array; agents
    have no filter array and always read as enabled.
    """
    entries: list[PackageResourceEntry] = []
    for package in packages:
        root = package_root(package, paths.cwd)
        if root is None:
            continue
        manifest = read_manifest(root)
        if manifest is None:
            continue
        section = _manifest_section(manifest)

        for key, resource_type in RESOURCE_TYPES.items():
            declared = section.get(key)
            if isinstance(declared, str):
                declared = [declared]
            if not isinstance(declared, list):
                continue
            for raw_path in declared:
                if not isinstance(raw_path, str):
                    continue
                resource_path = normalize_relative_path(raw_path)
                entries.append(
                    PackageResourceEntry(
                        id=(
                            f"pkg-res:{package.scope}:{package.source}:"
                            f"{resource_type}:{resource_path}"
                        ),
                        package_source=package.source,
                        package_name=package.name,
                        package_scope=package.scope,
                        resource_type=resource_type,
                        resource_path=resource_path,
                        display_name=f"{package.name}/{resource_path}",
                        summary=_resource_summary(root / raw_path, resource_type),
                        state=(
                            store.get_resource_state(
                                package.source, key, resource_path, package.scope
                            )
                            if store is not None
                            else "enabled"
                        ),
                    )
                )

    entries.sort(key=lambda entry: entry.display_name)
    return entries


def installed_package_root(source: str, scope: Scope, paths: ExtmgrPaths) -> Path | None:
    """Where the host installs a registry or GitHub package for ``scope``."""
    install_root = paths.package_install_root(scope)

    registry = parse_registry_source(source)
    if registry is not None:
        return install_root / "npm" / "node_modules" / registry.name

    vcs = parse_vcs_source(source)
    if vcs is not None:
        match = _GITHUB_REPO_RE.search(vcs.repo)
        if match:
            return install_root / "git" / "github.com" / match.group(1)
    return None


def apply_default_disabled(paths: ExtmgrPaths, store: SettingsFilterStore) -> int:
    """Disable unconfigured packages whose manifest sets ``pi.defaultDisabled``.

    Returns the number of entries converted. A scope whose settings file is
    malformed is skipped.
    """
    applied = 0
    for scope in SCOPES:
        try:
            document = store.load(scope, strict=True)
        except ExtmgrError as exc:
            logger.warning(
                "Skipping defaultDisabled for unreadable settings",
                data={"scope": scope, "error": str(exc)},
            )
            continue

        changed = False
        for index, entry in enumerate(document.packages):
            if not isinstance(entry, UnconfiguredSource):
                continue
            root = installed_package_root(entry.source, scope, paths)
            if root is None:
                continue
            if _manifest_section(read_manifest(root)).get("defaultDisabled") is True:
                document.packages[index] = disabled_entry(entry.source)
                changed = True
                applied += 1

        if changed:
            store.save(document)
            logger.info("Applied defaultDisabled", data={"scope": scope})
    return applied
