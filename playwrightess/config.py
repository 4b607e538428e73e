"""Session configuration for Playwrightess.

The configuration is read once, before the first snippet runs, from
``PLAYWRIGHTESS_*`` environment variables (a ``.env`` file in the working
directory is honoured).  It selects one of three operating modes and carries
the paths and launch options each mode needs.
"""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Dict, Mapping, Optional

from dotenv import load_dotenv

ENV_PREFIX = "PLAYWRIGHTESS_"

# Chromium flags applied to every browser we launch ourselves.
DEFAULT_LAUNCH_ARGS: tuple[str, ...] = (
    "--disable-web-security",
    "--disable-features=VizDisplayCompositor",
    "--no-first-run",
    "--disable-default-apps",
)

DEFAULT_VIEWPORT: Mapping[str, int] = {"width": 1280, "height": 720}

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

DEFAULT_PROFILE_DIRNAME = ".playwright-session"
DEFAULT_STORAGE_STATE_FILENAME = "shared-storage-state.json"

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off", ""}


class SessionMode(str, Enum):
    """How the single automation session is obtained."""

    EPHEMERAL = "ephemeral"
    PERSISTENT = "persistent"
    ATTACHED = "attached"

    @classmethod
    def parse(cls, value: "str | SessionMode") -> "SessionMode":
        if isinstance(value, SessionMode):
            return value
        key = (value or "").strip().lower()
        mode = _MODE_ALIASES.get(key)
        if mode is None:
            allowed = ", ".join(sorted(_MODE_ALIASES))
            raise ValueError(f"Unknown session mode {value!r}; expected one of {{{allowed}}}.")
        return mode


_MODE_ALIASES: Dict[str, SessionMode] = {
    "ephemeral": SessionMode.EPHEMERAL,
    "browser": SessionMode.EPHEMERAL,
    "persistent": SessionMode.PERSISTENT,
    "persisted-profile": SessionMode.PERSISTENT,
    "profile": SessionMode.PERSISTENT,
    "attached": SessionMode.ATTACHED,
    "app": SessionMode.ATTACHED,
    "electron": SessionMode.ATTACHED,
}


@dataclass(frozen=True)
class SessionConfig:
    """Everything the session manager needs to start, reuse and stop a session."""

    mode: SessionMode = SessionMode.EPHEMERAL
    profile_dir: Path = field(default_factory=lambda: Path.cwd() / DEFAULT_PROFILE_DIRNAME)
    storage_state_path: Path = field(
        default_factory=lambda: Path.cwd() / DEFAULT_STORAGE_STATE_FILENAME
    )
    app_executable: Optional[Path] = None
    app_args: tuple[str, ...] = ()
    headless: bool = False
    launch_args: tuple[str, ...] = DEFAULT_LAUNCH_ARGS
    viewport: Mapping[str, int] = field(default_factory=lambda: dict(DEFAULT_VIEWPORT))
    user_agent: str = DEFAULT_USER_AGENT
    navigation_timeout_ms: int = 8000
    attach_timeout_s: float = 15.0
    debug_port: Optional[int] = None
    log_level: str = "INFO"

    def with_overrides(self, **overrides: object) -> "SessionConfig":
        """Return a copy with every non-``None`` override applied."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        if "mode" in changes:
            changes["mode"] = SessionMode.parse(changes["mode"])  # type: ignore[arg-type]
        for key in ("profile_dir", "storage_state_path", "app_executable"):
            if key in changes:
                changes[key] = Path(changes[key]).expanduser()  # type: ignore[arg-type]
        if "app_args" in changes:
            changes["app_args"] = tuple(changes["app_args"])  # type: ignore[arg-type]
        return replace(self, **changes)


def load_config(environ: Optional[Mapping[str, str]] = None) -> SessionConfig:
    """Build a :class:`SessionConfig` from ``environ`` (defaults to ``os.environ``).

    When reading the real process environment a ``.env`` file is loaded first
    without overriding variables that are already set.
    """
    if environ is None:
        load_dotenv()
        environ = os.environ

    def get(name: str) -> str:
        return (environ.get(ENV_PREFIX + name) or "").strip()

    defaults = SessionConfig()
    mode = SessionMode.parse(get("MODE")) if get("MODE") else defaults.mode

    app_executable = Path(get("APP_EXECUTABLE")).expanduser() if get("APP_EXECUTABLE") else None

    return SessionConfig(
        mode=mode,
        profile_dir=_path_or(get("PROFILE_DIR"), defaults.profile_dir),
        storage_state_path=_path_or(get("STORAGE_STATE"), defaults.storage_state_path),
        app_executable=app_executable,
        app_args=tuple(shlex.split(get("APP_ARGS"))),
        headless=_parse_bool("HEADLESS", get("HEADLESS"), defaults.headless),
        navigation_timeout_ms=_parse_int(
            "NAVIGATION_TIMEOUT_MS", get("NAVIGATION_TIMEOUT_MS"), defaults.navigation_timeout_ms
        ),
        attach_timeout_s=_parse_float(
            "ATTACH_TIMEOUT", get("ATTACH_TIMEOUT"), defaults.attach_timeout_s
        ),
        debug_port=_parse_int("DEBUG_PORT", get("DEBUG_PORT"), None),
        log_level=(get("LOG_LEVEL") or defaults.log_level).upper(),
    )


def _path_or(raw: str, default: Path) -> Path:
    return Path(raw).expanduser() if raw else default


def _parse_bool(name: str, raw: str, default: bool) -> bool:
    if not raw:
        return default
    lowered = raw.lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ValueError(f"{ENV_PREFIX}{name} must be a boolean, got {raw!r}.")


def _parse_int(name: str, raw: str, default: Optional[int]) -> Optional[int]:
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}.") from None


def _parse_float(name: str, raw: str, default: float) -> float:
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}.") from None


__all__ = [
    "DEFAULT_LAUNCH_ARGS",
    "DEFAULT_USER_AGENT",
    "DEFAULT_VIEWPORT",
    "SessionConfig",
    "SessionMode",
    "load_config",
]
