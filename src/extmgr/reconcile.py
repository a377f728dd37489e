"""Apply staged enable/disable edits across local extensions and packages.

Every toggleable row carries a backend that knows how to persist a target
state. Staged edits are applied one at a time so read-modify-write cycles on
the same settings file never overlap; one failing item never blocks the rest.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal, Protocol

from extmgr.core.exceptions import ExtmgrError
from extmgr.core.logging.logger import get_logger
from extmgr.extensions.discovery import set_extension_state
from extmgr.history import ChangeEntry
from extmgr.models import (
    ApplyResult,
    ExtensionEntry,
    InstalledPackage,
    PackageExtensionEntry,
    PackageResourceEntry,
    ResourceType,
    Scope,
    State,
    ToggleResult,
)

if TYPE_CHECKING:
    from extmgr.history import ChangeLog
    from extmgr.packages.settings_store import SettingsFilterStore

logger = get_logger(__name__)

ItemKind = Literal["local", "package", "package-extension", "package-resource"]

_KIND_RANK: dict[ItemKind, int] = {
    "local": 0,
    "package": 1,
    "package-extension": 2,
    "package-resource": 3,
}


class ToggleableUnit(Protocol):
    """Persists an enabled/disabled target for one row."""

    def apply(self, target: State) -> ToggleResult: ...


@dataclass(frozen=True)
class RenameBackend:
    """Local extensions: state is the presence of the ``.disabled`` suffix."""

    entry: ExtensionEntry

    def apply(self, target: State) -> ToggleResult:
        return set_extension_state(self.entry, target)


@dataclass(frozen=True)
class MarkerArrayBackend:
    """Package entrypoints: state is the last marker in ``settings.json``."""

    store: SettingsFilterStore
    package_source: str
    extension_path: str
    scope: Scope

    def apply(self, target: State) -> ToggleResult:
        try:
            self.store.set_state(self.package_source, self.extension_path, self.scope, target)
        except ExtmgrError as exc:
            return ToggleResult.failure(str(exc))
        return ToggleResult.success()


@dataclass(frozen=True)
class PackageDisableBackend:
    """Whole packages: all four filter arrays empty means disabled."""

    store: SettingsFilterStore
    package_source: str
    scope: Scope

    def apply(self, target: State) -> ToggleResult:
        try:
            self.store.set_package_disabled(self.package_source, self.scope, target == "disabled")
        except ExtmgrError as exc:
            return ToggleResult.failure(str(exc))
        return ToggleResult.success()


@dataclass
class UnifiedItem:
    kind: ItemKind
    id: str
    display_name: str
    summary: str
    scope: Scope
    original_state: State | None = None
    backend: ToggleableUnit | None = None
    source: str | None = None
    version: str | None = None
    description: str | None = None
    size: int | None = None
    update_available: bool = False
    package_source: str | None = None
    extension_path: str | None = None
    resource_type: ResourceType | None = None

    @property
    def toggleable(self) -> bool:
        return self.backend is not None and self.original_state is not None


def _duplicates_local_extension(package: InstalledPackage, local_paths: set[str]) -> bool:
    source = package.source.lower()
    resolved = (package.resolved_path or "").lower().replace("\\", "/")
    for local_path in local_paths:
        if source == local_path or (resolved and resolved == local_path):
            return True
        if resolved and (local_path.startswith(resolved + "/") or resolved.startswith(local_path)):
            return True
        if resolved and resolved == local_path.rsplit("/", 1)[0]:
            return True
    return False


def build_unified_items(
    local_entries: Iterable[ExtensionEntry],
    installed: Iterable[InstalledPackage],
    package_extensions: Iterable[PackageExtensionEntry],
    store: SettingsFilterStore,
    *,
    known_updates: Iterable[str] = (),
    package_resources: Iterable[PackageResourceEntry] = (),
) -> list[UnifiedItem]:
    """One sorted list of local extensions, packages and package sub-units."""
    updates = set(known_updates)
    items: list[UnifiedItem] = []
    local_paths: set[str] = set()

    for entry in local_entries:
        local_paths.add(str(entry.active_path).lower().replace("\\", "/"))
        items.append(
            UnifiedItem(
                kind="local",
                id=entry.id,
                display_name=entry.display_name,
                summary=entry.summary,
                scope=entry.scope,
                original_state=entry.state,
                backend=RenameBackend(entry),
            )
        )

    for extension in package_extensions:
        items.append(
            UnifiedItem(
                kind="package-extension",
                id=extension.id,
                display_name=extension.display_name,
                summary=extension.summary,
                scope=extension.package_scope,
                original_state=extension.state,
                backend=MarkerArrayBackend(
                    store,
                    extension.package_source,
                    extension.extension_path,
                    extension.package_scope,
                ),
                package_source=extension.package_source,
                extension_path=extension.extension_path,
            )
        )

    for resource in package_resources:
        items.append(
            UnifiedItem(
                kind="package-resource",
                id=resource.id,
                display_name=resource.display_name,
                summary=resource.summary,
                scope=resource.package_scope,
                original_state=resource.state,
                package_source=resource.package_source,
                resource_type=resource.resource_type,
            )
        )

    for package in installed:
        if _duplicates_local_extension(package, local_paths):
            continue
        state: State = (
            "disabled" if store.is_package_disabled(package.source, package.scope) else "enabled"
        )
        items.append(
            UnifiedItem(
                kind="package",
                id=f"pkg:{package.source}",
                display_name=package.name,
                summary=package.description or f"{package.source} ({package.scope})",
                scope=package.scope,
                original_state=state,
                backend=PackageDisableBackend(store, package.source, package.scope),
                source=package.source,
                version=package.version,
                description=package.description,
                size=package.size,
                update_available=package.name in updates,
            )
        )

    items.sort(key=lambda item: (_KIND_RANK[item.kind], item.display_name))
    return items


def pending_change_count(items: Iterable[UnifiedItem], staged: Mapping[str, State]) -> int:
    """Staged ids whose target differs from the row's original state."""
    by_id = {item.id: item for item in items if item.toggleable}
    return sum(
        1
        for item_id, target in staged.items()
        if item_id in by_id and by_id[item_id].original_state != target
    )


async def apply_staged_changes(
    items: Iterable[UnifiedItem],
    staged: Mapping[str, State],
    *,
    change_log: ChangeLog | None = None,
) -> ApplyResult:
    """Persist each staged target in order, collecting per-item failures."""
    changed = 0
    errors: list[str] = []

    for item in items:
        if not item.toggleable:
            continue
        assert item.original_state is not None and item.backend is not None
        target = staged.get(item.id, item.original_state)
        if target == item.original_state:
            continue

        try:
            result = await asyncio.to_thread(item.backend.apply, target)
        except (ExtmgrError, OSError, ValueError) as exc:
            result = ToggleResult.failure(str(exc))

        if result.ok:
            changed += 1
            logger.info(
                "Applied staged change",
                data={"id": item.id, "from": item.original_state, "to": target},
            )
        else:
            errors.append(f"{item.id}: {result.error}")
            logger.warning(
                "Staged change failed",
                data={"id": item.id, "to": target, "error": result.error},
            )

        if change_log is not None:
            change_log.append(
                ChangeEntry(
                    action="extension_toggle",
                    extension_id=item.id,
                    from_state=item.original_state,
                    to_state=target,
                    package_source=item.package_source or item.source,
                    scope=item.scope,
                    success=result.ok,
                    error=result.error,
                )
            )

    return ApplyResult(changed=changed, errors=errors)
