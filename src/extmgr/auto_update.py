"""Background update checks for registry-installed packages.

The persisted config uses the camelCase keys of ``auto-update.json``;
``intervalMs``, ``lastCheck`` and ``nextCheck`` are milliseconds.
"""

from __future__ import annotations

import asyncio
import json
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from extmgr.core.logging.logger import get_logger
from extmgr.marketplace.source_utils import atomic_write_json, parse_registry_source
from extmgr.packages.discovery import get_installed_packages

if TYPE_CHECKING:
    from extmgr.config import Settings
    from extmgr.models import InstalledPackage
    from extmgr.process import CommandRunner

logger = get_logger(__name__)

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS
WEEK_MS = 7 * DAY_MS
MONTH_MS = 30 * DAY_MS

_DURATION_RE = re.compile(
    r"^(\d+)\s*(h|hr|hrs|hour|hours|d|day|days|w|wk|wks|week|weeks|m|mo|mos|month|months)$"
)
_UNITS: dict[str, tuple[int, str]] = {
    "h": (HOUR_MS, "hour"),
    "d": (DAY_MS, "day"),
    "w": (WEEK_MS, "week"),
    "m": (MONTH_MS, "month"),
}


@dataclass(frozen=True)
class Duration:
    ms: int
    display: str


def parse_duration(text: str) -> Duration | None:
    """Parse ``1h``/``3d``/``2w``/``1m``, ``daily``/``weekly`` or ``never``/``off``."""
    normalized = text.strip().lower()
    if normalized in ("never", "off", "disable"):
        return Duration(ms=0, display="off")
    if normalized in ("daily", "day", "1d"):
        return Duration(ms=DAY_MS, display="daily")
    if normalized in ("weekly", "week", "1w"):
        return Duration(ms=WEEK_MS, display="weekly")

    match = _DURATION_RE.match(normalized)
    if match is None:
        return None
    value = int(match.group(1))
    unit_ms, unit_name = _UNITS[match.group(2)[0]]
    display = f"1 {unit_name}" if value == 1 else f"{value} {unit_name}s"
    return Duration(ms=value * unit_ms, display=display)


class AutoUpdateConfig(BaseModel):
    interval_ms: int = Field(default=0, alias="intervalMs", ge=0)
    enabled: bool = False
    display_text: str = Field(default="off", alias="displayText")
    last_check: float | None = Field(default=None, alias="lastCheck")
    next_check: float | None = Field(default=None, alias="nextCheck")
    updates_available: list[str] = Field(default_factory=list, alias="updatesAvailable")

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @model_validator(mode="after")
    def _sanitize(self) -> AutoUpdateConfig:
        # a zero interval and a disabled flag are the same state
        if self.interval_ms == 0 or not self.enabled:
            self.interval_ms = 0
            self.enabled = False
            self.display_text = "off"
        return self

    @property
    def active(self) -> bool:
        return self.enabled and self.interval_ms > 0

    def dump(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class AutoUpdateConfigStore:
    """JSON-file store for :class:`AutoUpdateConfig`."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> AutoUpdateConfig:
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return AutoUpdateConfig()
        except (OSError, ValueError) as exc:
            logger.warning(
                "Failed to read auto-update config",
                data={"path": str(self._path), "error": str(exc)},
            )
            return AutoUpdateConfig()

        if not isinstance(payload, dict):
            return AutoUpdateConfig()
        try:
            return AutoUpdateConfig.model_validate(payload)
        except ValidationError as exc:
            logger.warning(
                "Ignoring invalid auto-update config",
                data={"path": str(self._path), "error": str(exc)},
            )
            return AutoUpdateConfig()

    def save(self, config: AutoUpdateConfig) -> None:
        try:
            atomic_write_json(self._path, config.dump())
        except OSError as exc:
            logger.warning(
                "Failed to save auto-update config",
                data={"path": str(self._path), "error": str(exc)},
            )


def _now_ms(clock: Callable[[], float]) -> float:
    return clock() * 1000


def enable_auto_update(
    store: AutoUpdateConfigStore,
    duration: Duration,
    *,
    clock: Callable[[], float] = time.time,
) -> AutoUpdateConfig:
    if duration.ms == 0:
        return disable_auto_update(store)
    now = _now_ms(clock)
    config = AutoUpdateConfig(
        interval_ms=duration.ms,
        enabled=True,
        display_text=duration.display,
        last_check=now,
        next_check=now + duration.ms,
    )
    store.save(config)
    return config


def disable_auto_update(store: AutoUpdateConfigStore) -> AutoUpdateConfig:
    config = AutoUpdateConfig()
    store.save(config)
    return config


async def _has_update(
    package: InstalledPackage,
    runner: CommandRunner,
    settings: Settings,
    cwd: Path | None,
) -> bool:
    spec = parse_registry_source(package.source)
    if spec is None or not package.version:
        return False

    result = await runner.exec(
        settings.registry_command,
        ["view", spec.name, "version", "--json"],
        timeout=settings.timeouts.registry_view,
        cwd=cwd,
    )
    if not result.ok:
        return False
    try:
        latest = json.loads(result.stdout)
    except ValueError:
        return False
    # plain inequality: any difference, including a downgrade, counts
    return isinstance(latest, str) and latest != package.version


async def check_for_updates(
    runner: CommandRunner,
    settings: Settings,
    store: AutoUpdateConfigStore,
    *,
    cwd: Path | None = None,
    clock: Callable[[], float] = time.time,
) -> list[str]:
    """Names of registry packages whose published version differs from the local one.

    The result is persisted with the check time whether or not anything changed.
    """
    packages = await get_installed_packages(runner, settings, cwd=cwd, with_metadata=False)
    updates: list[str] = []
    for package in packages:
        if parse_registry_source(package.source) is None:
            continue
        if await _has_update(package, runner, settings, cwd):
            updates.append(package.name)

    config = store.load()
    now = _now_ms(clock)
    store.save(
        config.model_copy(
            update={
                "last_check": now,
                "next_check": now + config.interval_ms,
                "updates_available": updates,
            }
        )
    )
    logger.info("Update check finished", data={"updates": updates})
    return updates


@dataclass(frozen=True)
class UpdateCheckContext:
    """What a check needs from the live session."""

    runner: CommandRunner
    settings: Settings
    cwd: Path | None = None


ContextProvider = Callable[[], UpdateCheckContext | None]
UpdatesCallback = Callable[[list[str]], None]


class AutoUpdateScheduler:
    """Runs :func:`check_for_updates` now and then every configured interval.

    The context is re-read through ``context_provider`` on every tick; when it
    returns ``None`` the session is over and the timer stops itself. Stopping
    only suppresses future ticks, a check already in flight runs to completion.
    """

    def __init__(
        self,
        store: AutoUpdateConfigStore,
        context_provider: ContextProvider,
        *,
        on_updates: UpdatesCallback | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._context_provider = context_provider
        self._on_updates = on_updates
        self._clock = clock
        self._timer: asyncio.Task[None] | None = None
        self._checks: set[asyncio.Task[list[str]]] = set()

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def start(self) -> bool:
        """Arm the timer from the persisted config; returns whether it is running."""
        self.stop()
        if self._context_provider() is None:
            return False

        config = self._store.load()
        if not config.active:
            return False

        self._store.save(
            config.model_copy(update={"next_check": _now_ms(self._clock) + config.interval_ms})
        )
        self._spawn_check()
        self._timer = asyncio.create_task(self._tick(config.interval_ms / 1000))
        logger.debug("Auto-update timer started", data={"interval_ms": config.interval_ms})
        return True

    def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def wait_for_checks(self) -> None:
        if self._checks:
            await asyncio.gather(*self._checks, return_exceptions=True)

    async def _tick(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            if not self._spawn_check():
                logger.debug("Session ended; stopping auto-update timer")
                self._timer = None
                return

    def _spawn_check(self) -> bool:
        context = self._context_provider()
        if context is None:
            return False
        task = asyncio.create_task(self._run_check(context))
        self._checks.add(task)
        task.add_done_callback(self._checks.discard)
        return True

    async def _run_check(self, context: UpdateCheckContext) -> list[str]:
        try:
            updates = await check_for_updates(
                context.runner,
                context.settings,
                self._store,
                cwd=context.cwd,
                clock=self._clock,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Background update check failed", data={"error": str(exc)})
            return []
        if updates and self._on_updates is not None:
            self._on_updates(updates)
        return updates


def auto_update_status(config: AutoUpdateConfig, running: bool) -> str:
    if not config.active:
        return "⏸ auto-update off"
    indicator = "↻" if running else "⏸"
    return f"{indicator} {config.display_text}"
