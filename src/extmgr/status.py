"""One-line status summary for the host's status bar."""

from __future__ import annotations

from extmgr.auto_update import AutoUpdateConfig, auto_update_status
from extmgr.marketplace.formatting import pluralize


def build_status_text(
    package_count: int,
    config: AutoUpdateConfig,
    *,
    scheduler_running: bool = False,
) -> str:
    parts: list[str] = []
    if package_count > 0:
        parts.append(pluralize(package_count, "pkg"))
    parts.append(auto_update_status(config, scheduler_running))
    if config.updates_available:
        parts.append(pluralize(len(config.updates_available), "update"))
    return " • ".join(parts)
