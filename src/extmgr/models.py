"""Records shared by discovery, persistence and reconciliation."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

Scope = Literal["global", "project"]
State = Literal["enabled", "disabled"]
ResourceType = Literal["extension", "skill", "agent", "prompt", "theme"]


@dataclass
class InstalledPackage:
    """One entry of the host's ``list`` output; rebuilt on every query."""

    source: str
    name: str
    scope: Scope
    version: str | None = None
    resolved_path: str | None = None
    description: str | None = None
    size: int | None = None


@dataclass(frozen=True)
class ExtensionEntry:
    """A standalone local extension; state is encoded by the ``.disabled`` suffix."""

    id: str
    scope: Scope
    state: State
    active_path: Path
    disabled_path: Path
    display_name: str
    summary: str


@dataclass(frozen=True)
class PackageExtensionEntry:
    id: str
    package_source: str
    package_name: str
    package_scope: Scope
    extension_path: str
    absolute_path: Path
    display_name: str
    summary: str
    state: State


@dataclass(frozen=True)
class PackageResourceEntry:
    id: str
    package_source: str
    package_name: str
    package_scope: Scope
    resource_type: ResourceType
    resource_path: str
    display_name: str
    summary: str
    state: State = "enabled"


class RegistryPackage(BaseModel):
    """Subset of ``npm view``/``npm search`` JSON the manager uses."""

    name: str
    version: str | None = None
    description: str | None = None
    keywords: list[str] = Field(default_factory=list)
    date: str | None = None
    size: int | None = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("keywords", mode="before")
    @classmethod
    def _coerce_keywords(cls, value: object) -> list[str]:
        if isinstance(value, list):
            return [item for item in value if isinstance(item, str)]
        return []


@dataclass(frozen=True)
class ToggleResult:
    ok: bool
    error: str | None = None

    @classmethod
    def success(cls) -> ToggleResult:
        return cls(ok=True)

    @classmethod
    def failure(cls, error: str) -> ToggleResult:
        return cls(ok=False, error=error)


@dataclass(frozen=True)
class ApplyResult:
    changed: int = 0
    errors: list[str] = field(default_factory=list)
