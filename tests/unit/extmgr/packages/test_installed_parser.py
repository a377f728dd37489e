from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest

from extmgr.cache import MetadataCache
from extmgr.core.exceptions import ParseFailure, SubprocessFailure
from extmgr.packages.discovery import (
    get_installed_packages,
    parse_installed_packages_output,
    parse_installed_packages_output_all_scopes,
    parse_package_name_and_version,
    search_registry_packages,
)
from extmgr.process import ExecResult

if TYPE_CHECKING:
    from pathlib import Path

    from extmgr.config import Settings


def test_parses_scopes_names_versions_and_resolved_paths() -> None:
    text = """
User packages:
  npm:pi-extmgr@0.1.4
Project packages:
  git:https://github.com/user/repo.git@main (filtered)
    resolved: /nonexistent/.pi/git/github.com/user/repo
  /home/user/.fnm/node_modules/local-pkg
    /nonexistent/.pi/npm/local-pkg
"""
    packages = parse_installed_packages_output(text)

    assert len(packages) == 3
    first, second, third = packages
    assert (first.source, first.name, first.version, first.scope) == (
        "npm:pi-extmgr@0.1.4",
        "pi-extmgr",
        "0.1.4",
        "global",
    )
    assert first.resolved_path is None

    assert second.source == "git:https://github.com/user/repo.git@main"
    assert second.name == "repo"
    assert second.scope == "project"
    assert second.resolved_path == "/nonexistent/.pi/git/github.com/user/repo"

    assert third.source == "/home/user/.fnm/node_modules/local-pkg"
    assert third.name == "local-pkg"
    assert third.resolved_path == "/nonexistent/.pi/npm/local-pkg"


def test_deduplicates_by_normalized_source() -> None:
    text = "Global:\n  npm:dup-pkg@1.0.0\n  npm:dup-pkg@1.0.0 (filtered)\n"
    packages = parse_installed_packages_output(text)
    assert [package.source for package in packages] == ["npm:dup-pkg@1.0.0"]


def test_deduplicates_by_name_within_a_scope() -> None:
    text = "Global:\n  npm:demo@1.0.0\n  ./vendor/demo\nProject:\n  ./vendor/demo\n"
    packages = parse_installed_packages_output(text)
    assert [(package.source, package.scope) for package in packages] == [
        ("npm:demo@1.0.0", "global"),
    ]

    all_scopes = parse_installed_packages_output_all_scopes(text)
    assert [(package.source, package.scope) for package in all_scopes] == [
        ("npm:demo@1.0.0", "global"),
        ("./vendor/demo", "global"),
        ("./vendor/demo", "project"),
    ]


def test_same_name_in_different_scopes_is_kept() -> None:
    text = "Global:\n  npm:demo@1.0.0\nProject:\n  ./vendor/demo\n"
    packages = parse_installed_packages_output(text)
    assert [(package.name, package.scope) for package in packages] == [
        ("demo", "global"),
        ("demo", "project"),
    ]


def test_all_scopes_keeps_duplicates_across_scopes() -> None:
    text = "Global:\n  npm:dup-pkg@1.0.0\nProject:\n  npm:dup-pkg@1.0.0\n"
    packages = parse_installed_packages_output_all_scopes(text)
    assert [package.scope for package in packages] == ["global", "project"]


def test_parses_ssh_git_sources() -> None:
    text = "Global:\n  git:git@github.com:user/super-ext.git@v1\n"
    packages = parse_installed_packages_output(text)
    assert len(packages) == 1
    assert packages[0].name == "super-ext"


def test_unrecognised_lines_are_ignored() -> None:
    text = "Installed packages\nGlobal:\n  something odd\n  npm:real@1.0.0\n"
    packages = parse_installed_packages_output(text)
    assert [package.name for package in packages] == ["real"]


def test_missing_version_is_read_from_package_manifest(tmp_path: Path) -> None:
    root = tmp_path / "local-pkg"
    root.mkdir()
    (root / "package.json").write_text(
        json.dumps({"name": "local-pkg", "version": "3.2.1", "description": "Local demo"}),
        encoding="utf-8",
    )
    packages = parse_installed_packages_output(f"Global:\n  ./local-pkg\n    resolved: {root}\n")

    assert packages[0].version == "3.2.1"
    assert packages[0].description == "Local demo"


def test_parse_package_name_and_version() -> None:
    assert parse_package_name_and_version("npm:@scope/demo@1.2.3") == ("@scope/demo", "1.2.3")
    assert parse_package_name_and_version("git:github.com/user/tool@v2") == ("tool", None)
    assert parse_package_name_and_version("./vendor/demo") == ("demo", None)


@pytest.mark.asyncio
async def test_failed_listing_reads_as_no_packages(make_runner, settings: Settings) -> None:
    runner = make_runner(lambda command, args: ExecResult(code=1, stdout="", stderr="boom"))
    assert await get_installed_packages(runner, settings) == []

    runner = make_runner(lambda command, args: ExecResult(0, "No packages installed.\n", ""))
    assert await get_installed_packages(runner, settings) == []


@pytest.mark.asyncio
async def test_metadata_is_fetched_and_cached(
    make_runner, settings: Settings, tmp_path: Path
) -> None:
    def handler(command: str, args: list[str]) -> ExecResult:
        if command == "pi":
            return ExecResult(0, "Global:\n  npm:demo-pkg@1.0.0\n  git:github.com/u/tool\n", "")
        if args[2] == "description":
            return ExecResult(0, '"A demo package"', "")
        if args[2] == "dist.unpackedSize":
            return ExecResult(0, "2048", "")
        return ExecResult(1, "", "unexpected")

    runner = make_runner(handler)
    cache = MetadataCache(tmp_path / "metadata.json")
    packages = await get_installed_packages(runner, settings, cache=cache)

    demo, tool = packages
    assert demo.description == "A demo package"
    assert demo.size == 2048
    assert tool.description == "git repository"

    views = [call for call in runner.calls if call.command == "npm"]
    assert len(views) == 2

    runner.calls.clear()
    again = await get_installed_packages(runner, settings, cache=cache)
    assert again[0].description == "A demo package"
    assert again[0].size == 2048
    assert [call.command for call in runner.calls] == ["pi"]


@pytest.mark.asyncio
async def test_description_fetch_keeps_cached_size(
    make_runner, settings: Settings, tmp_path: Path
) -> None:
    def handler(command: str, args: list[str]) -> ExecResult:
        if command == "pi":
            return ExecResult(0, "Global:\n  npm:demo-pkg@1.0.0\n", "")
        if args[2] == "description":
            return ExecResult(0, '"A demo package"', "")
        return ExecResult(1, "", "unexpected")

    cache = MetadataCache(tmp_path / "metadata.json")
    await cache.set_size("demo-pkg", 4096)
    runner = make_runner(handler)

    (demo,) = await get_installed_packages(runner, settings, cache=cache)

    assert demo.description == "A demo package"
    assert demo.size == 4096
    assert [call.args[2] for call in runner.calls if call.command == "npm"] == ["description"]
    entry = await cache.get("demo-pkg")
    assert entry is not None
    assert (entry.description, entry.size) == ("A demo package", 4096)


@pytest.mark.asyncio
async def test_search_filters_pi_packages_and_uses_cache(
    make_runner, settings: Settings, tmp_path: Path
) -> None:
    payload = [
        {"name": "pi-one", "version": "1.0.0", "description": "one", "keywords": ["pi-package"]},
        {"name": "other", "version": "1.0.0", "keywords": ["misc"]},
    ]
    runner = make_runner(lambda command, args: ExecResult(0, json.dumps(payload), ""))
    cache = MetadataCache(tmp_path / "metadata.json")

    results = await search_registry_packages("keywords:pi-package", runner, settings, cache=cache)
    assert [package.name for package in results] == ["pi-one"]
    assert runner.calls[0].args == [
        "search",
        "--json",
        f"--searchlimit={settings.search_limit}",
        "keywords:pi-package",
    ]

    cached = await search_registry_packages("keywords:pi-package", runner, settings, cache=cache)
    assert [package.name for package in cached] == ["pi-one"]
    assert len(runner.calls) == 1


@pytest.mark.asyncio
async def test_search_failures_raise(make_runner, settings: Settings, tmp_path: Path) -> None:
    cache = MetadataCache(tmp_path / "metadata.json")

    failing = make_runner(lambda command, args: ExecResult(1, "", "registry down"))
    with pytest.raises(SubprocessFailure) as excinfo:
        await search_registry_packages("demo", failing, settings, cache=cache)
    assert "registry down" in str(excinfo.value)

    garbled = make_runner(lambda command, args: ExecResult(0, "not json", ""))
    with pytest.raises(ParseFailure):
        await search_registry_packages("demo", garbled, settings, cache=cache)
