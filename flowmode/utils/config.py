#!/usr/bin/env python3
from __future__ import annotations

import dataclasses
import logging
import os
import tomllib
from typing import Any, Dict, List, Optional

from flowmode.core.errors import ConfigInvalid
from flowmode.core.models import (
    ON_DENIED_POLICIES,
    ON_DENIED_TIMER_ONLY,
    PomodoroSettings,
    SessionConfig,
)
from flowmode.file_handlers.block_list import (
    DEFAULT_APP_BLOCK_LIST,
    DEFAULT_BLOCK_LIST,
    DEFAULT_WHITELIST_BLOCK_LIST,
    Blocklist,
)
from flowmode.utils.duration import format_duration, parse_duration

CONFIG_FILENAME = "config.toml"


@dataclasses.dataclass(frozen=True)
class Paths:
    home: str

    @classmethod
    def default(cls) -> "Paths":
        home = os.environ.get("FLOWMODE_HOME") or os.path.join(os.path.expanduser("~"), ".flowmode")
        return cls(os.path.abspath(home))

    @property
    def marker_file(self) -> str:
        return os.path.join(self.home, "session.json")

    @property
    def backup_file(self) -> str:
        return os.path.join(self.home, "hosts.backup")

    @property
    def user_hosts_backup_file(self) -> str:
        return os.path.join(self.home, "user_hosts.backup")

    @property
    def user_hosts_file(self) -> str:
        return os.path.join(self.home, "hosts")

    @property
    def pid_file(self) -> str:
        return os.path.join(self.home, "flowmode.pid")

    @property
    def log_file(self) -> str:
        return os.path.join(self.home, "flowmode.log")

    @property
    def session_log(self) -> str:
        return os.path.join(self.home, "log.csv")

    def ensure(self) -> None:
        os.makedirs(self.home, exist_ok=True)


@dataclasses.dataclass(frozen=True)
class PomodoroDefaults:
    pomodoro: str = "25m"
    short_break: str = "5m"
    long_break: str = "15m"
    cycles: int = 4


@dataclasses.dataclass(frozen=True)
class Config:
    block_list: List[str] = dataclasses.field(default_factory=lambda: list(DEFAULT_BLOCK_LIST))
    app_block_list: List[str] = dataclasses.field(default_factory=lambda: list(DEFAULT_APP_BLOCK_LIST))
    whitelist: List[str] = dataclasses.field(default_factory=list)
    whitelist_block_list: List[str] = dataclasses.field(
        default_factory=lambda: list(DEFAULT_WHITELIST_BLOCK_LIST))
    pomodoro_defaults: Optional[PomodoroDefaults] = dataclasses.field(default_factory=PomodoroDefaults)
    redirect_address: str = "127.0.0.1"
    hosts_file: Optional[str] = None
    expand_www: bool = True
    on_hosts_denied: str = ON_DENIED_TIMER_ONLY
    mute_during_work: bool = True
    slack_webhook_url: Optional[str] = None
    source: Optional[str] = None

    def blocklist(self) -> Blocklist:
        return Blocklist.from_config(
            block_list=self.block_list,
            app_block_list=self.app_block_list,
            whitelist=self.whitelist,
            whitelist_block_list=self.whitelist_block_list,
            expand_www=self.expand_www,
        )


def _string_list(data: Dict[str, Any], key: str, default: List[str]) -> List[str]:
    value = data.get(key)
    if value is None:
        return list(default)
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigInvalid(f"'{key}' must be a list of strings")
    return list(value)


def _typed(data: Dict[str, Any], key: str, kind, default):
    value = data.get(key, default)
    if value is not None and not isinstance(value, kind):
        raise ConfigInvalid(f"'{key}' must be of type {kind.__name__}")
    return value


def _pomodoro_defaults(data: Dict[str, Any]) -> Optional[PomodoroDefaults]:
    if "pomodoro_defaults" not in data:
        return PomodoroDefaults()
    section = data["pomodoro_defaults"]
    if section is False:
        return None
    if not isinstance(section, dict):
        raise ConfigInvalid("'pomodoro_defaults' must be a table")
    base = PomodoroDefaults()
    cycles = _typed(section, "cycles", int, base.cycles)
    return PomodoroDefaults(
        pomodoro=_typed(section, "pomodoro", str, base.pomodoro),
        short_break=_typed(section, "break", str, base.short_break),
        long_break=_typed(section, "long_break", str, base.long_break),
        cycles=cycles,
    )


def parse_config(data: Dict[str, Any], source: Optional[str] = None) -> Config:
    policy = _typed(data, "on_hosts_denied", str, ON_DENIED_TIMER_ONLY)
    if policy not in ON_DENIED_POLICIES:
        raise ConfigInvalid(f"'on_hosts_denied' must be one of: {', '.join(ON_DENIED_POLICIES)}")
    return Config(
        block_list=_string_list(data, "block_list", list(DEFAULT_BLOCK_LIST)),
        app_block_list=_string_list(data, "app_block_list", list(DEFAULT_APP_BLOCK_LIST)),
        whitelist=_string_list(data, "whitelist", []),
        whitelist_block_list=_string_list(data, "whitelist_block_list", list(DEFAULT_WHITELIST_BLOCK_LIST)),
        pomodoro_defaults=_pomodoro_defaults(data),
        redirect_address=_typed(data, "redirect_address", str, "127.0.0.1"),
        hosts_file=_typed(data, "hosts_file", str, None),
        expand_www=_typed(data, "expand_www", bool, True),
        on_hosts_denied=policy,
        mute_during_work=_typed(data, "mute_during_work", bool, True),
        slack_webhook_url=_typed(data, "slack_webhook_url", str, None),
        source=source,
    )


def find_config_file(explicit: Optional[str], paths: Paths) -> Optional[str]:
    if explicit:
        if not os.path.exists(explicit):
            raise ConfigInvalid(f"Config file {explicit} not found")
        return os.path.abspath(explicit)
    for candidate in (os.path.abspath(CONFIG_FILENAME), os.path.join(paths.home, CONFIG_FILENAME)):
        if os.path.exists(candidate):
            return candidate
    return None


def load_config(explicit: Optional[str] = None, paths: Optional[Paths] = None) -> Config:
    paths = paths or Paths.default()
    path = find_config_file(explicit, paths)
    if path is None:
        logging.info("No config file found, using built-in defaults")
        return Config()
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigInvalid(f"Invalid TOML in {path}: {e}") from e
    except OSError as e:
        raise ConfigInvalid(f"Failed to read {path}: {e}") from e
    logging.info(f"Loaded configuration from {path}")
    return parse_config(data, source=path)


def build_session_config(
    config: Config,
    duration: str,
    task: Optional[str] = None,
    whitelist: bool = False,
    pomodoro: Optional[str] = None,
    short_break: Optional[str] = None,
    long_break: Optional[str] = None,
    cycles: Optional[int] = None,
    no_pomodoro: bool = False,
) -> SessionConfig:
    """Combine CLI values with config defaults; CLI values win.

    Pomodoro is active when any Pomodoro flag is given or the config has
    pomodoro defaults, unless no_pomodoro is set. A session shorter than one
    default work interval runs as a single countdown; explicit flags are
    validated as given.
    """
    total = parse_duration(duration)
    flags_given = any(v is not None for v in (pomodoro, short_break, long_break, cycles))
    settings = None
    if not no_pomodoro and (flags_given or config.pomodoro_defaults is not None):
        defaults = config.pomodoro_defaults or PomodoroDefaults()
        settings = PomodoroSettings(
            work=parse_duration(pomodoro or defaults.pomodoro),
            short_break=parse_duration(short_break or defaults.short_break, allow_zero=True),
            long_break=parse_duration(long_break or defaults.long_break, allow_zero=True),
            cycles=cycles if cycles is not None else defaults.cycles,
        )
        if not flags_given and total < settings.work:
            logging.info(f"Session is shorter than one {format_duration(settings.work)} pomodoro; "
                         f"running a single countdown")
            settings = None
    session = SessionConfig(
        duration=total,
        task=task,
        pomodoro=settings,
        whitelist_mode=whitelist,
        on_hosts_denied=config.on_hosts_denied,
    )
    session.validate()
    return session
