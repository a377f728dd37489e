from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest

from extmgr.core.exceptions import StrictFormatError
from extmgr.packages.settings_store import (
    ConfiguredSource,
    OpaqueEntry,
    SettingsFilterStore,
    UnconfiguredSource,
    fold_markers,
    load_settings_document,
    replace_marker,
)
from extmgr.reconcile import MarkerArrayBackend

if TYPE_CHECKING:
    from pathlib import Path

    from extmgr.paths import ExtmgrPaths


def _write(path: Path, payload: object) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def _read(path: Path) -> dict:
    return json.loads(path.read_text(encoding="utf-8"))


def test_fold_markers_last_marker_wins() -> None:
    markers = ["-main.ts", "+other.ts", "+./main.ts", "-main.ts"]
    assert fold_markers(markers, "main.ts") == "disabled"
    assert fold_markers(markers, "other.ts") == "enabled"
    assert fold_markers(markers, "missing.ts") == "enabled"
    assert fold_markers(None, "main.ts") == "enabled"
    assert fold_markers(["main.ts"], "main.ts") == "enabled"


def test_replace_marker_keeps_one_marker_per_path() -> None:
    updated = replace_marker(["-main.ts", "+other.ts", "+main.ts"], "./main.ts", "disabled")
    assert updated == ["+other.ts", "-main.ts"]


def test_set_state_converts_string_entry_and_keeps_latest_marker(paths: ExtmgrPaths) -> None:
    settings_path = paths.settings_path("global")
    _write(settings_path, {"theme": "dark", "packages": ["npm:demo-pkg@1.0.0"]})
    store = SettingsFilterStore(paths)

    store.set_state("npm:demo-pkg@1.0.0", "./extensions/main.ts", "global", "disabled")
    payload = _read(settings_path)
    assert payload["theme"] == "dark"
    assert payload["packages"] == [
        {"source": "npm:demo-pkg@1.0.0", "extensions": ["-extensions/main.ts"]}
    ]
    assert store.get_state("npm:demo-pkg@1.0.0", "extensions/main.ts", "global") == "disabled"

    store.set_state("npm:demo-pkg@1.0.0", "extensions/main.ts", "global", "enabled")
    assert _read(settings_path)["packages"][0]["extensions"] == ["+extensions/main.ts"]
    assert store.get_state("npm:demo-pkg@1.0.0", "extensions/main.ts", "global") == "enabled"


def test_set_state_preserves_other_filters_and_unknown_keys(paths: ExtmgrPaths) -> None:
    settings_path = paths.settings_path("project")
    _write(
        settings_path,
        {
            "packages": [
                {
                    "source": "npm:demo (filtered)",
                    "skills": ["+skills/a"],
                    "pinned": True,
                    "extensions": ["-a.ts"],
                },
                42,
            ]
        },
    )
    store = SettingsFilterStore(paths)

    store.set_state("npm:demo", "b.ts", "project", "disabled")
    entry, opaque = _read(settings_path)["packages"]
    assert entry["source"] == "npm:demo (filtered)"
    assert entry["skills"] == ["+skills/a"]
    assert entry["pinned"] is True
    assert entry["extensions"] == ["-a.ts", "-b.ts"]
    assert opaque == 42


def test_set_state_appends_entry_when_source_missing(paths: ExtmgrPaths) -> None:
    store = SettingsFilterStore(paths)
    store.set_state("npm:new", "index.ts", "global", "disabled")
    assert _read(paths.settings_path("global"))["packages"] == [
        {"source": "npm:new", "extensions": ["-index.ts"]}
    ]


def test_invalid_json_is_reported_and_left_untouched(paths: ExtmgrPaths) -> None:
    settings_path = paths.settings_path("global")
    settings_path.parent.mkdir(parents=True)
    settings_path.write_text("{ invalid json", encoding="utf-8")
    store = SettingsFilterStore(paths)

    with pytest.raises(StrictFormatError, match="Invalid JSON"):
        store.set_state("npm:demo-pkg@1.0.0", "extensions/main.ts", "global", "disabled")

    result = MarkerArrayBackend(store, "npm:demo-pkg@1.0.0", "extensions/main.ts", "global").apply(
        "disabled"
    )
    assert result.ok is False
    assert result.error is not None and "Invalid JSON" in result.error
    assert settings_path.read_text(encoding="utf-8") == "{ invalid json"


def test_non_object_settings_are_rejected_in_strict_mode(tmp_path: Path) -> None:
    settings_path = tmp_path / "settings.json"
    settings_path.write_text("[1, 2]", encoding="utf-8")

    with pytest.raises(StrictFormatError, match="expected a JSON object"):
        load_settings_document(settings_path, strict=True)
    assert load_settings_document(settings_path).packages == []


def test_non_utf8_settings_are_rejected_in_strict_mode(tmp_path: Path) -> None:
    settings_path = tmp_path / "settings.json"
    settings_path.write_bytes(b'{"packages": ["\xff"]}')

    with pytest.raises(StrictFormatError, match="Invalid settings format"):
        load_settings_document(settings_path, strict=True)
    assert load_settings_document(settings_path).packages == []


def test_set_state_rewrites_entry_with_non_array_filter_in_place(paths: ExtmgrPaths) -> None:
    settings_path = paths.settings_path("global")
    _write(
        settings_path,
        {"packages": [{"source": "npm:demo", "extensions": "-a.ts", "skills": ["-s"]}]},
    )
    store = SettingsFilterStore(paths)
    assert store.get_state("npm:demo", "a.ts", "global") == "enabled"

    store.set_state("npm:demo", "b.ts", "global", "disabled")

    assert _read(settings_path)["packages"] == [
        {"source": "npm:demo", "extensions": ["-b.ts"], "skills": ["-s"]}
    ]


def test_package_disable_replaces_entry_with_non_array_filter(paths: ExtmgrPaths) -> None:
    settings_path = paths.settings_path("project")
    _write(settings_path, {"packages": [{"source": "npm:demo", "themes": {"bad": True}}]})
    store = SettingsFilterStore(paths)

    store.set_package_disabled("npm:demo", "project", True)

    packages = _read(settings_path)["packages"]
    assert len(packages) == 1
    assert store.is_package_disabled("npm:demo", "project") is True


def test_load_classifies_entries(tmp_path: Path) -> None:
    settings_path = tmp_path / "settings.json"
    _write(settings_path, {"packages": ["npm:a", {"source": "npm:b"}, {"nope": 1}]})
    document = load_settings_document(settings_path)

    assert isinstance(document.packages[0], UnconfiguredSource)
    assert isinstance(document.packages[1], ConfiguredSource)
    assert isinstance(document.packages[2], OpaqueEntry)
    assert document.to_json()["packages"] == ["npm:a", {"source": "npm:b"}, {"nope": 1}]


def test_package_disable_round_trip(paths: ExtmgrPaths) -> None:
    settings_path = paths.settings_path("global")
    _write(settings_path, {"packages": [{"source": "npm:demo", "extensions": ["-a.ts"]}]})
    store = SettingsFilterStore(paths)

    assert store.is_package_disabled("npm:demo", "global") is False
    store.set_package_disabled("npm:demo", "global", True)
    assert _read(settings_path)["packages"] == [
        {"source": "npm:demo", "extensions": [], "skills": [], "prompts": [], "themes": []}
    ]
    assert store.is_package_disabled("npm:demo", "global") is True

    store.set_package_disabled("npm:demo", "global", False)
    assert _read(settings_path)["packages"] == ["npm:demo"]
    assert store.is_package_disabled("npm:demo", "global") is False
