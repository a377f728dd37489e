"""Installed-package listing, metadata enrichment and registry search.

The host's ``list`` command is the only source of truth for what is installed;
its text output is parsed here into :class:`InstalledPackage` records.
"""

from __future__ import annotations

import asyncio
import json
import re
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from extmgr.core.exceptions import ParseFailure, SubprocessFailure
from extmgr.core.logging.logger import get_logger
from extmgr.extensions.discovery import read_summary
from extmgr.marketplace.source_utils import (
    REGISTRY_PREFIX,
    VCS_PREFIX,
    local_source_name,
    normalize_source,
    parse_registry_source,
    parse_vcs_source,
    read_json_file,
    vcs_repo_name,
)
from extmgr.models import InstalledPackage, RegistryPackage, Scope

if TYPE_CHECKING:
    from extmgr.cache import MetadataCache
    from extmgr.config import Settings
    from extmgr.process import CommandRunner

logger = get_logger(__name__)

PI_PACKAGE_KEYWORD = "pi-package"

_ENTRY_RE = re.compile(r"^[-•]?\s*(npm:|git:|https?:|/|\./|\.\./)(.+)$")
_CONTINUATION_INDENT = "    "
_RESOLVED_LABEL = "resolved:"
_NO_PACKAGES_RE = re.compile(r"No packages installed", re.IGNORECASE)

_GLOBAL_HEADERS = ("global packages", "global:", "user packages", "user:")
_PROJECT_HEADERS = ("project packages", "project:", "local packages", "local:")


def _scope_header(line: str) -> Scope | None:
    lowered = line.lower()
    if lowered in ("global", "user") or lowered.startswith(_GLOBAL_HEADERS):
        return "global"
    if lowered in ("project", "local") or lowered.startswith(_PROJECT_HEADERS):
        return "project"
    return None


def parse_package_name_and_version(source: str) -> tuple[str, str | None]:
    """Derive the display name and version encoded in a normalized source."""
    if source.startswith(REGISTRY_PREFIX):
        spec = parse_registry_source(source)
        if spec is None:
            return source, None
        return spec.name, spec.version

    if source.startswith(VCS_PREFIX):
        vcs = parse_vcs_source(source)
        if vcs is not None:
            name = vcs_repo_name(vcs.repo)
            if name:
                return name, None
        return source[len(VCS_PREFIX) :].split("@", 1)[0] or source, None

    return local_source_name(source), None


def _continuation_path(line: str) -> str | None:
    value = line.strip()
    if value.lower().startswith(_RESOLVED_LABEL):
        value = value[len(_RESOLVED_LABEL) :].strip()
    return value or None


def _parse_entries(text: str) -> list[InstalledPackage]:
    """Parse every entry line in order, attaching continuation paths."""
    entries: list[InstalledPackage] = []
    scope: Scope = "global"
    last: InstalledPackage | None = None

    for raw_line in text.splitlines():
        if not raw_line.strip():
            continue

        if raw_line.startswith(_CONTINUATION_INDENT):
            if last is not None and last.resolved_path is None:
                last.resolved_path = _continuation_path(raw_line)
            continue

        line = raw_line.strip()
        header = _scope_header(line)
        if header is not None:
            scope = header
            last = None
            continue

        match = _ENTRY_RE.match(line)
        if match is None:
            last = None
            continue

        source = normalize_source(match.group(1) + match.group(2))
        name, version = parse_package_name_and_version(source)
        last = InstalledPackage(source=source, name=name, scope=scope, version=version)
        entries.append(last)

    return entries


def _hydrate_from_manifest(package: InstalledPackage) -> None:
    if package.version is not None or not package.resolved_path:
        return
    manifest_path = Path(package.resolved_path) / "package.json"
    try:
        manifest = read_json_file(manifest_path)
    except (OSError, ValueError):
        return
    if not isinstance(manifest, dict):
        return

    name = manifest.get("name")
    version = manifest.get("version")
    description = manifest.get("description")
    if isinstance(name, str) and name.strip():
        package.name = name.strip()
    if isinstance(version, str) and version.strip():
        package.version = version.strip()
    if isinstance(description, str) and description.strip() and not package.description:
        package.description = description.strip()


def parse_installed_packages_output(text: str) -> list[InstalledPackage]:
    """Parse ``list`` output, collapsing duplicate sources and duplicate names.

    Sources collapse across scopes; a derived name collapses only within its
    scope. This is the listing used for everything user-facing.
    """
    packages: list[InstalledPackage] = []
    seen_sources: set[str] = set()
    seen_names: set[tuple[Scope, str]] = set()

    for entry in _parse_entries(text):
        if entry.source in seen_sources:
            continue
        seen_sources.add(entry.source)
        if (entry.scope, entry.name) in seen_names:
            continue
        seen_names.add((entry.scope, entry.name))
        packages.append(entry)

    for package in packages:
        _hydrate_from_manifest(package)
    return packages


def parse_installed_packages_output_all_scopes(text: str) -> list[InstalledPackage]:
    """Parse ``list`` output keeping one entry per ``(scope, source)`` pair."""
    packages: list[InstalledPackage] = []
    seen: set[tuple[Scope, str]] = set()

    for entry in _parse_entries(text):
        key = (entry.scope, entry.source)
        if key in seen:
            continue
        seen.add(key)
        packages.append(entry)

    for package in packages:
        _hydrate_from_manifest(package)
    return packages


async def _list_packages_text(
    runner: CommandRunner,
    settings: Settings,
    cwd: Path | None,
) -> str | None:
    result = await runner.exec(
        settings.host_command,
        ["list"],
        timeout=settings.timeouts.list_packages,
        cwd=cwd,
    )
    if not result.ok:
        logger.debug(
            "Package listing failed; treating as empty",
            data={"code": result.code, "stderr": result.stderr.strip()},
        )
        return None

    text = result.stdout or ""
    if not text.strip() or _NO_PACKAGES_RE.search(text):
        return None
    return text


async def get_installed_packages(
    runner: CommandRunner,
    settings: Settings,
    *,
    cwd: Path | None = None,
    cache: MetadataCache | None = None,
    with_metadata: bool = True,
) -> list[InstalledPackage]:
    """List installed packages; a failed listing reads as "none installed"."""
    text = await _list_packages_text(runner, settings, cwd)
    if text is None:
        return []

    packages = parse_installed_packages_output(text)
    if with_metadata and cache is not None:
        await add_package_metadata(packages, runner, settings, cache=cache, cwd=cwd)
    return packages


def _registry_name(source: str) -> str | None:
    spec = parse_registry_source(source)
    return spec.name if spec else None


async def _registry_view(
    runner: CommandRunner,
    settings: Settings,
    name: str,
    field: str,
    cwd: Path | None,
) -> Any:
    result = await runner.exec(
        settings.registry_command,
        ["view", name, field, "--json"],
        timeout=settings.timeouts.registry_view,
        cwd=cwd,
    )
    if not result.ok:
        return None
    try:
        return json.loads(result.stdout)
    except ValueError:
        return None


async def fetch_package_size(
    name: str,
    runner: CommandRunner,
    settings: Settings,
    *,
    cache: MetadataCache,
    cwd: Path | None = None,
) -> int | None:
    cached = await cache.get_size(name)
    if cached is not None:
        return cached

    size = await _registry_view(runner, settings, name, "dist.unpackedSize", cwd)
    if isinstance(size, (int, float)) and not isinstance(size, bool) and size > 0:
        await cache.set_size(name, int(size))
        return int(size)
    return None


async def _enrich_package(
    package: InstalledPackage,
    runner: CommandRunner,
    settings: Settings,
    cache: MetadataCache,
    cwd: Path | None,
) -> None:
    source = package.source
    needs_description = not package.description
    needs_size = package.size is None and source.startswith(REGISTRY_PREFIX)
    if not needs_description and not needs_size:
        return

    if source.endswith((".ts", ".js")):
        if needs_description:
            package.description = await asyncio.to_thread(read_summary, Path(source))
        return

    if source.startswith(REGISTRY_PREFIX):
        name = _registry_name(source)
        if not name:
            return
        if needs_description:
            cached = await cache.get(name)
            if cached is not None and cached.description:
                package.description = cached.description
            else:
                description = await _registry_view(runner, settings, name, "description", cwd)
                if isinstance(description, str) and description:
                    package.description = description
                    await cache.set(name, description=description)
        if needs_size:
            package.size = await fetch_package_size(
                name, runner, settings, cache=cache, cwd=cwd
            )
        return

    if needs_description:
        package.description = "git repository" if source.startswith(VCS_PREFIX) else "local package"


async def add_package_metadata(
    packages: list[InstalledPackage],
    runner: CommandRunner,
    settings: Settings,
    *,
    cache: MetadataCache,
    cwd: Path | None = None,
) -> None:
    """Fill in descriptions and sizes, querying the registry in small batches."""
    cached_descriptions = await cache.get_descriptions(packages)
    for package in packages:
        description = cached_descriptions.get(package.source)
        if description:
            package.description = description

    batch_size = max(1, settings.metadata_batch_size)
    for start in range(0, len(packages), batch_size):
        batch = packages[start : start + batch_size]
        results = await asyncio.gather(
            *(_enrich_package(package, runner, settings, cache, cwd) for package in batch),
            return_exceptions=True,
        )
        for package, outcome in zip(batch, results):
            if isinstance(outcome, Exception):
                logger.warning(
                    "Failed to fetch package metadata",
                    data={"source": package.source, "error": str(outcome)},
                )


def _parse_search_results(stdout: str, query: str) -> list[RegistryPackage]:
    try:
        payload = json.loads(stdout or "[]")
    except ValueError as exc:
        raise ParseFailure("Failed to parse npm search output", str(exc)) from exc
    if not isinstance(payload, list):
        raise ParseFailure("Failed to parse npm search output", "expected a JSON array")

    only_pi_packages = f"keywords:{PI_PACKAGE_KEYWORD}" in query
    packages: list[RegistryPackage] = []
    for item in payload:
        if not isinstance(item, dict) or not item.get("name"):
            continue
        try:
            package = RegistryPackage.model_validate(item)
        except ValidationError as exc:
            logger.debug(
                "Skipping malformed search result",
                data={"name": item.get("name"), "error": str(exc)},
            )
            continue
        if only_pi_packages and PI_PACKAGE_KEYWORD not in package.keywords:
            continue
        packages.append(package)
    return packages


async def search_registry_packages(
    query: str,
    runner: CommandRunner,
    settings: Settings,
    *,
    cache: MetadataCache,
    cwd: Path | None = None,
) -> list[RegistryPackage]:
    """Search the registry, serving a fresh cached result set when available."""
    cached = await cache.get_search(query)
    if cached:
        logger.debug("Using cached search results", data={"query": query, "count": len(cached)})
        return cached

    args = ["search", "--json", f"--searchlimit={settings.search_limit}", query]
    result = await runner.exec(
        settings.registry_command,
        args,
        timeout=settings.timeouts.registry_search,
        cwd=cwd,
    )
    if not result.ok:
        raise SubprocessFailure(
            [settings.registry_command, *args],
            result.code,
            result.stdout,
            result.stderr,
            action="npm search",
        )

    packages = _parse_search_results(result.stdout, query)
    await cache.set_search(query, packages)
    return packages
