from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
import yaml

from extmgr.config import Settings, get_settings, reset_settings
from extmgr.paths import resolve_paths

_ENV_VARS = ("EXTMGR_AGENT_DIR", "PI_CODING_AGENT_DIR", "EXTMGR_CACHE_DIR", "PI_EXTMGR_CACHE_DIR")


def _write_yaml(path: Path, payload: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as handle:
        yaml.safe_dump(payload, handle, sort_keys=False)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    reset_settings()
    yield
    reset_settings()


def test_defaults_resolve_under_agent_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("PI_CODING_AGENT_DIR", str(tmp_path / "agent"))

    settings = Settings()

    assert settings.resolved_agent_dir == tmp_path / "agent"
    assert settings.resolved_cache_dir == tmp_path / "agent" / ".extmgr-cache"
    assert settings.host_command == "pi"
    assert settings.timeouts.package_install == 180


def test_project_config_overrides_agent_config(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    workspace = tmp_path / "workspace"
    agent_dir = tmp_path / "agent"
    _write_yaml(
        agent_dir / "extmgr.config.yaml",
        {"search_limit": 10, "timeouts": {"registry_view": 5, "package_remove": 30}},
    )
    _write_yaml(
        workspace / "extmgr.config.yaml",
        {"search_limit": 50, "timeouts": {"registry_view": 7}},
    )
    monkeypatch.chdir(workspace)
    monkeypatch.setenv("EXTMGR_AGENT_DIR", str(agent_dir))

    settings = get_settings()

    assert settings.search_limit == 50
    assert settings.timeouts.registry_view == 7
    assert settings.timeouts.package_remove == 30
    assert get_settings() is settings


def test_env_overrides_yaml(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _write_yaml(tmp_path / "extmgr.config.yaml", {"search_limit": 50, "cache_dir": "/from/yaml"})
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("EXTMGR_AGENT_DIR", str(tmp_path / "agent"))
    monkeypatch.setenv("EXTMGR_SEARCH_LIMIT", "12")
    monkeypatch.setenv("PI_EXTMGR_CACHE_DIR", str(tmp_path / "cache"))

    settings = Settings()

    assert settings.search_limit == 12
    assert settings.resolved_cache_dir == tmp_path / "cache"


def test_unreadable_yaml_is_ignored(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    (tmp_path / "extmgr.config.yaml").write_text("search_limit: [unclosed", encoding="utf-8")
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("EXTMGR_AGENT_DIR", str(tmp_path / "agent"))

    assert Settings().search_limit == 30


def test_resolve_paths_layout(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    settings = Settings(agent_dir=tmp_path / "agent", cache_dir=tmp_path / "cache")
    paths = resolve_paths(settings, cwd=tmp_path)

    assert paths.settings_path("global") == tmp_path / "agent" / "settings.json"
    assert paths.settings_path("project") == tmp_path.resolve() / ".pi" / "settings.json"
    assert paths.extensions_root("project") == tmp_path.resolve() / ".pi" / "extensions"
    assert paths.metadata_cache_path == tmp_path / "cache" / "metadata.json"
    assert paths.history_path == tmp_path / "cache" / "history.jsonl"
