#!/usr/bin/env python3
from __future__ import annotations

import dataclasses
import datetime as dt
import enum
from typing import Optional

from flowmode.core.errors import ConfigInvalid

# Policies for a hosts file the OS refuses to let us write.
ON_DENIED_ABORT = "abort"
ON_DENIED_TIMER_ONLY = "timer-only"
ON_DENIED_USER_HOSTS = "user-hosts"
ON_DENIED_POLICIES = (ON_DENIED_ABORT, ON_DENIED_TIMER_ONLY, ON_DENIED_USER_HOSTS)


class SessionState(enum.Enum):
    IDLE = "idle"
    BLOCKING = "blocking"
    RUNNING = "running"
    STOPPING = "stopping"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        return self in (SessionState.BLOCKING, SessionState.RUNNING, SessionState.STOPPING)

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.FAILED)


class PhaseKind(enum.Enum):
    WORK = "work"
    SHORT_BREAK = "short_break"
    LONG_BREAK = "long_break"

    @property
    def label(self) -> str:
        return {
            PhaseKind.WORK: "Work",
            PhaseKind.SHORT_BREAK: "Short Break",
            PhaseKind.LONG_BREAK: "Long Break",
        }[self]


class Outcome(enum.Enum):
    COMPLETED = "completed"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclasses.dataclass(frozen=True)
class PomodoroPhase:
    kind: PhaseKind
    length: float
    remaining: float
    cycle: int = 0

    @property
    def is_work(self) -> bool:
        return self.kind is PhaseKind.WORK

    def with_remaining(self, remaining: float) -> "PomodoroPhase":
        return dataclasses.replace(self, remaining=remaining)


@dataclasses.dataclass(frozen=True)
class PomodoroSettings:
    work: dt.timedelta
    short_break: dt.timedelta = dt.timedelta(0)
    long_break: dt.timedelta = dt.timedelta(0)
    cycles: int = 4

    def validate(self) -> None:
        if self.work <= dt.timedelta(0):
            raise ConfigInvalid("Pomodoro work length must be positive")
        if self.short_break < dt.timedelta(0) or self.long_break < dt.timedelta(0):
            raise ConfigInvalid("Break lengths must not be negative")
        if self.cycles < 1:
            raise ConfigInvalid("Pomodoro cycles before a long break must be at least 1")


@dataclasses.dataclass(frozen=True)
class SessionConfig:
    duration: dt.timedelta
    task: Optional[str] = None
    pomodoro: Optional[PomodoroSettings] = None
    whitelist_mode: bool = False
    on_hosts_denied: str = ON_DENIED_TIMER_ONLY

    def validate(self) -> None:
        if self.duration <= dt.timedelta(0):
            raise ConfigInvalid("Session duration must be greater than zero")
        if self.on_hosts_denied not in ON_DENIED_POLICIES:
            raise ConfigInvalid(
                f"Unknown on_hosts_denied policy '{self.on_hosts_denied}' "
                f"(expected one of: {', '.join(ON_DENIED_POLICIES)})"
            )
        if self.pomodoro is not None:
            self.pomodoro.validate()
            if self.duration < self.pomodoro.work:
                raise ConfigInvalid("Session duration must be at least one Pomodoro work interval")

    @property
    def task_label(self) -> str:
        return self.task or "No task specified"


@dataclasses.dataclass(frozen=True)
class SessionRecord:
    task: str
    started_at: dt.datetime
    ended_at: dt.datetime
    outcome: Outcome
    reason: Optional[str] = None

    @property
    def duration(self) -> dt.timedelta:
        return self.ended_at - self.started_at
