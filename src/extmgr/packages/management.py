"""Install, update and remove packages through the host CLI."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from extmgr.core.exceptions import describe_failure
from extmgr.core.logging.logger import get_logger
from extmgr.history import log_package_change
from extmgr.marketplace.source_utils import normalize_for_install
from extmgr.packages.discovery import parse_package_name_and_version
from extmgr.packages.extensions import apply_default_disabled

if TYPE_CHECKING:
    from extmgr.cache import MetadataCache
    from extmgr.config import Settings
    from extmgr.history import ChangeLog
    from extmgr.models import Scope
    from extmgr.packages.settings_store import SettingsFilterStore
    from extmgr.process import CommandRunner

logger = get_logger(__name__)

PROJECT_FLAG = "-l"


@dataclass(frozen=True)
class PackageOperationOutcome:
    ok: bool
    message: str
    reload_recommended: bool = False
    already_up_to_date: bool = False


def _scope_args(scope: Scope) -> list[str]:
    return [PROJECT_FLAG] if scope == "project" else []


async def install_package(
    source: str,
    runner: CommandRunner,
    settings: Settings,
    *,
    scope: Scope = "global",
    cwd: Path | None = None,
    cache: MetadataCache | None = None,
    store: SettingsFilterStore | None = None,
    change_log: ChangeLog | None = None,
) -> PackageOperationOutcome:
    """Install ``source``; bare names are treated as registry packages."""
    normalized = normalize_for_install(source)
    name, version = parse_package_name_and_version(normalized)
    result = await runner.exec(
        settings.host_command,
        ["install", normalized, *_scope_args(scope)],
        timeout=settings.timeouts.package_install,
        cwd=cwd,
    )

    if not result.ok:
        error = describe_failure(result.code, result.stdout, result.stderr)
        if change_log is not None:
            log_package_change(
                change_log, "package_install", normalized, name, False,
                version=version, scope=scope, error=error,
            )
        logger.warning("Install failed", data={"source": normalized, "error": error})
        return PackageOperationOutcome(ok=False, message=f"Install failed: {error}")

    if cache is not None:
        await cache.clear_search()
    if store is not None:
        await asyncio.to_thread(apply_default_disabled, store.paths, store)
    if change_log is not None:
        log_package_change(
            change_log, "package_install", normalized, name, True, version=version, scope=scope
        )
    logger.info("Installed package", data={"source": normalized, "scope": scope})
    return PackageOperationOutcome(
        ok=True,
        message=f"Installed {normalized}",
        reload_recommended=True,
    )


async def update_package(
    source: str,
    runner: CommandRunner,
    settings: Settings,
    *,
    cwd: Path | None = None,
    change_log: ChangeLog | None = None,
) -> PackageOperationOutcome:
    name, _ = parse_package_name_and_version(source)
    result = await runner.exec(
        settings.host_command,
        ["update", source],
        timeout=settings.timeouts.package_update,
        cwd=cwd,
    )

    if not result.ok:
        error = describe_failure(result.code, result.stdout, result.stderr)
        if change_log is not None:
            log_package_change(change_log, "package_update", source, name, False, error=error)
        return PackageOperationOutcome(ok=False, message=f"Update failed: {error}")

    stdout = result.stdout or ""
    if "already up to date" in stdout or "pinned" in stdout:
        return PackageOperationOutcome(
            ok=True,
            message=f"{source} is already up to date (or pinned).",
            already_up_to_date=True,
        )

    if change_log is not None:
        log_package_change(change_log, "package_update", source, name, True)
    return PackageOperationOutcome(ok=True, message=f"Updated {source}", reload_recommended=True)


async def update_packages(
    runner: CommandRunner,
    settings: Settings,
    *,
    cwd: Path | None = None,
) -> PackageOperationOutcome:
    result = await runner.exec(
        settings.host_command,
        ["update"],
        timeout=settings.timeouts.package_update_all,
        cwd=cwd,
    )

    if not result.ok:
        error = describe_failure(result.code, result.stdout, result.stderr)
        return PackageOperationOutcome(ok=False, message=f"Update failed: {error}")

    stdout = result.stdout or ""
    if "already up to date" in stdout or not stdout.strip():
        return PackageOperationOutcome(
            ok=True,
            message="All packages are already up to date.",
            already_up_to_date=True,
        )
    return PackageOperationOutcome(ok=True, message="Packages updated", reload_recommended=True)


async def remove_package(
    source: str,
    runner: CommandRunner,
    settings: Settings,
    *,
    scope: Scope = "global",
    cwd: Path | None = None,
    cache: MetadataCache | None = None,
    change_log: ChangeLog | None = None,
) -> PackageOperationOutcome:
    name, _ = parse_package_name_and_version(source)
    result = await runner.exec(
        settings.host_command,
        ["remove", source, *_scope_args(scope)],
        timeout=settings.timeouts.package_remove,
        cwd=cwd,
    )

    if not result.ok:
        error = describe_failure(result.code, result.stdout, result.stderr)
        if change_log is not None:
            log_package_change(
                change_log, "package_remove", source, name, False, scope=scope, error=error
            )
        return PackageOperationOutcome(ok=False, message=f"Remove failed: {error}")

    if cache is not None:
        await cache.clear_search()
    if change_log is not None:
        log_package_change(change_log, "package_remove", source, name, True, scope=scope)
    logger.info("Removed package", data={"source": source, "scope": scope})
    return PackageOperationOutcome(ok=True, message=f"Removed {source}", reload_recommended=True)
