#!/usr/bin/env python3
from __future__ import annotations

import atexit
import datetime as dt
import logging
import queue
import signal
import threading
import time
from typing import Callable, Optional

from flowmode.core.errors import (
    AcquisitionFailed,
    AlreadyActive,
    HostsIOError,
    HostsPermissionDenied,
    ReleaseFailed,
)
from flowmode.core.models import (
    ON_DENIED_ABORT,
    ON_DENIED_USER_HOSTS,
    Outcome,
    PomodoroPhase,
    SessionConfig,
    SessionRecord,
    SessionState,
)
from flowmode.core.scheduler import PomodoroScheduler
from flowmode.utils.duration import format_duration, humanize_seconds

TICK = "tick"
STOP = "stop"
FAIL = "fail"

# SIGINT/SIGTERM are user stops (Ctrl-C, `flowmode stop`); a hangup is a failure.
STOP_SIGNALS = ("SIGINT", "SIGTERM")
FAIL_SIGNALS = ("SIGHUP",)


class SessionEngine:
    """Owns one focus session from start to its terminal state.

    Ticks and stop requests are queued and applied by run(), the single
    consumer, so transitions never interleave. Signal and atexit finalizers
    are registered before the hosts file is touched and removed only once
    the backup has been released (or its release has failed).
    """

    def __init__(self, guard, warden, blocklist, logger, notifier=None, webhook=None,
                 user_hosts_guard=None, clock: Callable[[], float] = time.monotonic,
                 tick_interval: float = 1.0, handle_signals: bool = True):
        self.guard = guard
        self.user_hosts_guard = user_hosts_guard
        self.warden = warden
        self.blocklist = blocklist
        self.logger = logger
        self.notifier = notifier
        self.webhook = webhook
        self.clock = clock
        self.tick_interval = tick_interval
        self.handle_signals = handle_signals

        self.state = SessionState.IDLE
        self.config: Optional[SessionConfig] = None
        self.scheduler: Optional[PomodoroScheduler] = None
        self.sweep_report = None
        self.record: Optional[SessionRecord] = None
        self.failure_reason: Optional[str] = None
        self.release_error: Optional[ReleaseFailed] = None
        self.degraded = False

        self._backup = None
        self._active_guard = None
        self._started_at: Optional[dt.datetime] = None
        self._events: queue.SimpleQueue = queue.SimpleQueue()
        self._previous_handlers = {}
        self._finalizer_registered = False

    @property
    def phase(self) -> Optional[PomodoroPhase]:
        if self.state is SessionState.RUNNING and self.scheduler is not None:
            return self.scheduler.current
        return None

    @property
    def hosts_path(self) -> Optional[str]:
        return self._active_guard.hosts_path if self._active_guard is not None else None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self, config: SessionConfig) -> None:
        if self.state.is_active:
            raise AlreadyActive(f"A focus session is already {self.state.value}")
        config.validate()

        self.config = config
        self.scheduler = None
        self.sweep_report = None
        self.record = None
        self.failure_reason = None
        self.release_error = None
        self.degraded = False
        self._active_guard = None
        self._events = queue.SimpleQueue()
        self._started_at = dt.datetime.now().astimezone()
        self.state = SessionState.BLOCKING
        self._register_finalizer()

        try:
            self._acquire_hosts(config)
            self.sweep_report = self.warden.sweep(self.blocklist.apps)
            self.scheduler = PomodoroScheduler(config.duration, config.pomodoro)
        except BaseException as e:
            self._shutdown(Outcome.FAILED, f"start failed: {e}")
            raise

        self.state = SessionState.RUNNING
        logging.info(f"Flow mode started for {format_duration(config.duration)} "
                     f"(task: {config.task_label})")
        self._notify_phase(self.scheduler.current)
        if self.webhook is not None:
            self._call(self.webhook.session_started, config)

    def _acquire_hosts(self, config: SessionConfig) -> None:
        domains = self.blocklist.deny_set(config.whitelist_mode)
        kwargs = dict(allow=self.blocklist.allow, whitelist=config.whitelist_mode, task=config.task)
        try:
            self._backup = self.guard.acquire(domains, **kwargs)
            self._active_guard = self.guard
            return
        except HostsIOError as e:
            raise AcquisitionFailed(str(e)) from e
        except HostsPermissionDenied as e:
            if config.on_hosts_denied == ON_DENIED_ABORT:
                raise AcquisitionFailed(f"{e}. Run with elevated privileges or change on_hosts_denied") from e
            denied = e

        if config.on_hosts_denied == ON_DENIED_USER_HOSTS and self.user_hosts_guard is not None:
            try:
                self._backup = self.user_hosts_guard.acquire(domains, **kwargs)
            except (HostsPermissionDenied, HostsIOError) as e:
                raise AcquisitionFailed(f"{denied}; user-level hosts file also failed: {e}") from e
            self._active_guard = self.user_hosts_guard
            logging.warning(f"{denied}. Using user-level hosts file {self.user_hosts_guard.hosts_path}")
            return

        self.degraded = True
        logging.warning(f"{denied}. Continuing without website blocking (timer only)")

    def tick(self, elapsed: float) -> None:
        if self.state is not SessionState.RUNNING:
            return
        for phase in self.scheduler.advance(elapsed):
            self._notify_phase(phase)
        if self.scheduler.finished:
            logging.info("Session duration reached")
            self._shutdown(Outcome.COMPLETED, None)

    def stop(self, reason: Optional[str] = None) -> Optional[SessionRecord]:
        if self.state not in (SessionState.BLOCKING, SessionState.RUNNING):
            logging.info(f"No running session to stop (state: {self.state.value})")
            return None
        logging.info(f"Stopping session{': ' + reason if reason else ''}")
        return self._shutdown(Outcome.STOPPED, reason)

    def fail(self, reason: str) -> Optional[SessionRecord]:
        if self.state not in (SessionState.BLOCKING, SessionState.RUNNING):
            return None
        logging.error(f"Session failed: {reason}")
        return self._shutdown(Outcome.FAILED, reason)

    def _shutdown(self, outcome: Outcome, reason: Optional[str]) -> SessionRecord:
        self.state = SessionState.STOPPING
        if self._backup is not None:
            backup, self._backup = self._backup, None
            try:
                self._active_guard.release(backup)
            except ReleaseFailed as e:
                self.release_error = e
                logging.critical(f"HOSTS FILE NOT RESTORED: {e}")
        self._unregister_finalizer()
        if self.notifier is not None:
            self._call(self.notifier.on_session_end)

        record = SessionRecord(
            task=self.config.task_label,
            started_at=self._started_at,
            ended_at=dt.datetime.now().astimezone(),
            outcome=outcome,
            reason=reason,
        )
        self.record = record
        if outcome is Outcome.FAILED:
            self.failure_reason = reason
            self.state = SessionState.FAILED
        else:
            self.state = SessionState.COMPLETED
        self._call(self.logger.record, record)
        if self.webhook is not None:
            self._call(self.webhook.session_ended, record)
        return record

    # ------------------------------------------------------------------
    # Event loop
    # ------------------------------------------------------------------
    def request_stop(self, reason: Optional[str] = None) -> None:
        """Queue a stop; safe to call from signal handlers and other threads"""
        self._events.put((STOP, reason))

    def request_fail(self, reason: str) -> None:
        self._events.put((FAIL, reason))

    def _next_wait(self) -> float:
        wait = self.tick_interval
        phase = self.phase
        if phase is not None:
            wait = min(wait, phase.remaining, self.scheduler.remaining_total)
        return max(0.0, wait)

    def run(self) -> Optional[SessionRecord]:
        last = self.clock()
        last_report = last
        try:
            while self.state in (SessionState.BLOCKING, SessionState.RUNNING):
                try:
                    kind, reason = self._events.get(timeout=self._next_wait())
                except queue.Empty:
                    kind, reason = TICK, None
                if kind == STOP:
                    self.stop(reason)
                elif kind == FAIL:
                    self.fail(reason)
                else:
                    now = self.clock()
                    self.tick(now - last)
                    last = now
                    if now - last_report >= 60 and self.scheduler is not None:
                        logging.info(f"{humanize_seconds(self.scheduler.remaining_total)} remaining")
                        last_report = now
        except BaseException as e:
            self.fail(f"{type(e).__name__}: {e}")
            raise
        return self.record

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------
    def _signal_handler(self, signum, frame):
        name = signal.Signals(signum).name
        logging.warning(f"Received signal {name} ({signum})")
        if name in FAIL_SIGNALS:
            self.request_fail(f"received {name}")
        else:
            self.request_stop(f"received {name}")

    def _finalize_at_exit(self):
        if self._backup is not None:
            self.fail("interpreter exiting with an active session")

    def _register_finalizer(self) -> None:
        atexit.register(self._finalize_at_exit)
        self._finalizer_registered = True
        if not self.handle_signals or threading.current_thread() is not threading.main_thread():
            return
        for name in STOP_SIGNALS + FAIL_SIGNALS:
            signum = getattr(signal, name, None)
            if signum is None:
                continue
            self._previous_handlers[signum] = signal.signal(signum, self._signal_handler)

    def _unregister_finalizer(self) -> None:
        if self._finalizer_registered:
            atexit.unregister(self._finalize_at_exit)
            self._finalizer_registered = False
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler if handler is not None else signal.SIG_DFL)
        self._previous_handlers = {}

    def _notify_phase(self, phase: Optional[PomodoroPhase]) -> None:
        if phase is None:
            return
        logging.info(f"{phase.kind.label} {phase.cycle + 1}: {humanize_seconds(phase.remaining)}")
        if self.notifier is not None:
            self._call(self.notifier.on_phase_change, phase)

    def _call(self, fn, *args):
        # Collaborator failures are reported, never allowed to change session state.
        try:
            return fn(*args)
        except Exception as e:
            logging.error(f"{getattr(fn, '__qualname__', fn)} failed: {e}")
            return None
