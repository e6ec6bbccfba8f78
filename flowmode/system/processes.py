#!/usr/bin/env python3
from __future__ import annotations

import dataclasses
import enum
import getpass
import logging
from typing import Callable, Iterable, List, Optional, Sequence

import psutil


class KillOutcome(enum.Enum):
    KILLED = "killed"
    NOT_FOUND = "not_found"
    PERMISSION_DENIED = "permission_denied"
    ERROR = "error"


@dataclasses.dataclass(frozen=True)
class SweepResult:
    app_name: str
    pid: Optional[int]
    outcome: KillOutcome
    detail: str = ""


@dataclasses.dataclass
class SweepReport:
    results: List[SweepResult] = dataclasses.field(default_factory=list)

    @property
    def killed(self) -> List[SweepResult]:
        return [r for r in self.results if r.outcome is KillOutcome.KILLED]

    @property
    def failures(self) -> List[SweepResult]:
        return [r for r in self.results
                if r.outcome in (KillOutcome.PERMISSION_DENIED, KillOutcome.ERROR)]

    @property
    def partial_failure(self) -> bool:
        return bool(self.failures)


def process_key(name: Optional[str]) -> str:
    """Case-insensitive process name with any Windows .exe suffix removed"""
    key = (name or "").strip().lower()
    if key.endswith(".exe"):
        key = key[:-4]
    return key


def _bare_username(name: Optional[str]) -> str:
    # Windows reports DOMAIN\user
    return (name or "").rsplit("\\", 1)[-1].lower()


class ProcessWarden:
    """One-shot sweep that terminates blocked applications of the current user"""

    def __init__(self, process_iter: Callable[..., Iterable] = psutil.process_iter,
                 username: Optional[str] = None, terminate_timeout: float = 3):
        self._process_iter = process_iter
        self.username = username or getpass.getuser()
        self.terminate_timeout = terminate_timeout

    def sweep(self, app_names: Sequence[str]) -> SweepReport:
        report = SweepReport()
        wanted = {process_key(a): a for a in app_names if process_key(a)}
        if not wanted:
            return report

        me = _bare_username(self.username)
        seen = set()
        for proc in self._process_iter(["pid", "name", "username"]):
            info = proc.info
            key = process_key(info.get("name"))
            if key not in wanted:
                continue
            app_name = wanted[key]
            owner = info.get("username")
            if owner is not None and _bare_username(owner) != me:
                logging.info(f"Skipped process {app_name} (PID: {info.get('pid')}) - not owned by current user")
                report.results.append(SweepResult(app_name, info.get("pid"), KillOutcome.PERMISSION_DENIED,
                                                  f"owned by {owner}"))
                continue
            seen.add(key)
            report.results.append(self._terminate(proc, app_name, info.get("pid")))

        for key, app_name in wanted.items():
            if key not in seen:
                logging.info(f"No instances of {app_name} found running under current user")
                report.results.append(SweepResult(app_name, None, KillOutcome.NOT_FOUND))

        if report.partial_failure:
            logging.warning(f"Could not close {len(report.failures)} blocked application process(es)")
        return report

    def _terminate(self, proc, app_name: str, pid: Optional[int]) -> SweepResult:
        try:
            proc.terminate()
            try:
                proc.wait(timeout=self.terminate_timeout)
            except psutil.TimeoutExpired:
                proc.kill()
            logging.info(f"Successfully killed process: {app_name} (PID: {pid})")
            return SweepResult(app_name, pid, KillOutcome.KILLED)
        except psutil.NoSuchProcess:
            return SweepResult(app_name, pid, KillOutcome.NOT_FOUND, "process already exited")
        except psutil.AccessDenied as e:
            logging.error(f"Failed to kill process: {app_name} (PID: {pid}) - may require elevated privileges")
            return SweepResult(app_name, pid, KillOutcome.PERMISSION_DENIED, str(e))
        except (psutil.Error, OSError) as e:
            logging.error(f"Failed to kill process: {app_name} (PID: {pid}): {e}")
            return SweepResult(app_name, pid, KillOutcome.ERROR, str(e))
