"""Shared package source parsing helpers and atomic JSON persistence."""

from __future__ import annotations

import json
import os
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, Literal

REGISTRY_PREFIX = "npm:"
VCS_PREFIX = "git:"

SourceKind = Literal["registry", "vcs", "local", "unknown"]

_ANNOTATION_RE = re.compile(r"\s+\((filtered|pinned)\)$", re.IGNORECASE)
_SCHEME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9+.-]*://")
_SCP_LIKE_RE = re.compile(r"^[^\s@/:]+@[^\s/:]+:.+$")
_DRIVE_RE = re.compile(r"^[A-Za-z]:[\\/]")
_LOCAL_PREFIXES = ("/", "./", "../", "~/", ".\\", "..\\", "\\\\", "file://")


@dataclass(frozen=True)
class RegistrySpec:
    name: str
    version: str | None = None


@dataclass(frozen=True)
class VcsSpec:
    repo: str
    ref: str | None = None


def normalize_source(source: str) -> str:
    """Strip ``(filtered)``/``(pinned)`` annotations the host appends to sources."""
    return _ANNOTATION_RE.sub("", source.strip()).strip()


def classify_source(source: str) -> SourceKind:
    value = normalize_source(source)
    if not value:
        return "unknown"
    if value.startswith(REGISTRY_PREFIX):
        return "registry"
    if value.startswith(VCS_PREFIX):
        return "vcs"
    if value.startswith("file://"):
        return "local"
    if _SCHEME_RE.match(value) or _SCP_LIKE_RE.match(value):
        return "vcs"
    if value.startswith(_LOCAL_PREFIXES) or _DRIVE_RE.match(value):
        return "local"
    return "unknown"


def normalize_for_install(source: str) -> str:
    """Return ``source`` unchanged when recognised, else treat it as a registry name."""
    value = source.strip()
    if classify_source(value) != "unknown":
        return value
    return f"{REGISTRY_PREFIX}{value}"


def split_registry_spec(spec: str) -> RegistrySpec:
    """Split ``name@version``; a leading ``@`` is a scope marker, not a separator."""
    last_at = spec.rfind("@")
    if last_at <= 0:
        return RegistrySpec(name=spec)
    version = spec[last_at + 1 :]
    if not version:
        return RegistrySpec(name=spec)
    return RegistrySpec(name=spec[:last_at], version=version)


def split_vcs_repo_and_ref(spec: str) -> VcsSpec:
    last_at = spec.rfind("@")
    if last_at <= 0:
        return VcsSpec(repo=spec)
    ref = spec[last_at + 1 :]
    # refs are short tokens; anything with a separator belongs to the repo
    if not ref or "/" in ref or ":" in ref:
        return VcsSpec(repo=spec)
    return VcsSpec(repo=spec[:last_at], ref=ref)


def parse_registry_source(source: str) -> RegistrySpec | None:
    value = normalize_source(source)
    if not value.startswith(REGISTRY_PREFIX):
        return None
    spec = value[len(REGISTRY_PREFIX) :]
    if not spec:
        return None
    return split_registry_spec(spec)


def parse_vcs_source(source: str) -> VcsSpec | None:
    value = normalize_source(source)
    if value.startswith(VCS_PREFIX):
        value = value[len(VCS_PREFIX) :]
    elif classify_source(value) != "vcs":
        return None
    if not value:
        return None
    return split_vcs_repo_and_ref(value)


def vcs_repo_name(repo: str) -> str | None:
    """Derive a short name from a repository URL or ``user@host:path`` form."""
    tail = repo.rstrip("/")
    if _SCP_LIKE_RE.match(tail) and not _SCHEME_RE.match(tail):
        tail = tail.split(":", 1)[1]
    name = tail.rsplit("/", 1)[-1]
    if name.endswith(".git"):
        name = name[: -len(".git")]
    return name or None


def normalize_relative_path(value: str) -> str:
    normalized = value.replace("\\", "/")
    if normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized.lstrip("/")


def local_source_name(source: str) -> str:
    """Basename of a local source, preferring the path below ``node_modules/``."""
    value = normalize_source(source).replace("\\", "/")
    marker = "node_modules/"
    if marker in value:
        tail = value.rsplit(marker, 1)[1].strip("/")
        if tail:
            return tail
    name = PurePosixPath(value.rstrip("/")).name
    return name or value


def read_json_file(path: Path) -> Any:
    content = path.read_text(encoding="utf-8")
    return json.loads(content)


def atomic_write_json(path: Path, payload: Any) -> None:
    """Write ``payload`` to a unique temp file then rename it over ``path``.

    Falls back to writing ``path`` directly when the rename cannot overwrite.
    """
    content = json.dumps(payload, indent=2, ensure_ascii=False) + "\n"
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path: Path | None = None
    try:
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=path.parent,
            prefix=f".{path.name}.{os.getpid()}.",
            suffix=".tmp",
            delete=False,
        ) as handle:
            temp_path = Path(handle.name)
            handle.write(content)
        os.replace(temp_path, path)
        temp_path = None
    except OSError:
        path.write_text(content, encoding="utf-8")
    finally:
        if temp_path is not None:
            temp_path.unlink(missing_ok=True)
