#!/usr/bin/env python3
from __future__ import annotations

import datetime as dt
from typing import List, Optional

from flowmode.core.models import PhaseKind, PomodoroPhase, PomodoroSettings

# Float ticks never sum exactly; anything closer than this to a boundary has reached it.
EPSILON = 1e-6


class PomodoroScheduler:
    """Work/break phase sequence bounded by the total session duration.

    Time is fed in through advance(); the scheduler never looks at a clock.
    Without settings the whole session is one Work phase.
    """

    def __init__(self, total: dt.timedelta, settings: Optional[PomodoroSettings] = None):
        self.total = total.total_seconds()
        self.settings = settings
        self.elapsed = 0.0
        if settings is None:
            self.current: Optional[PomodoroPhase] = PomodoroPhase(PhaseKind.WORK, self.total, self.total, 0)
        else:
            settings.validate()
            work = settings.work.total_seconds()
            self.current = PomodoroPhase(PhaseKind.WORK, work, work, 0)

    @property
    def finished(self) -> bool:
        return self.current is None

    @property
    def remaining_total(self) -> float:
        left = self.total - self.elapsed
        return left if left > EPSILON else 0.0

    def _next_phase(self, phase: PomodoroPhase) -> Optional[PomodoroPhase]:
        s = self.settings
        if s is None:
            return None
        work = s.work.total_seconds()
        short = s.short_break.total_seconds()
        long_ = s.long_break.total_seconds()
        if phase.kind is PhaseKind.WORK:
            if (phase.cycle + 1) % s.cycles == 0 and long_ > 0:
                return PomodoroPhase(PhaseKind.LONG_BREAK, long_, long_, phase.cycle)
            if short > 0:
                return PomodoroPhase(PhaseKind.SHORT_BREAK, short, short, phase.cycle)
        return PomodoroPhase(PhaseKind.WORK, work, work, phase.cycle + 1)

    def advance(self, seconds: float) -> List[PomodoroPhase]:
        """Consume elapsed time and return the phases entered, in order."""
        entered: List[PomodoroPhase] = []
        left = max(0.0, float(seconds))
        while self.current is not None:
            step = min(left, self.current.remaining, self.remaining_total)
            left -= step
            self.elapsed += step
            self.current = self.current.with_remaining(self.current.remaining - step)
            # The session ceiling truncates whatever phase is running.
            if self.remaining_total <= 0:
                self.current = None
                break
            if self.current.remaining > EPSILON:
                break
            self.current = self._next_phase(self.current)
            if self.current is not None:
                entered.append(self.current)
        return entered

    def plan(self) -> List[PomodoroPhase]:
        """Full phase sequence from the start, with the last phase truncated."""
        clone = PomodoroScheduler(dt.timedelta(seconds=self.total), self.settings)
        phases: List[PomodoroPhase] = []
        while clone.current is not None:
            phase = clone.current
            length = min(phase.remaining, clone.remaining_total)
            phases.append(PomodoroPhase(phase.kind, length, length, phase.cycle))
            clone.advance(phase.remaining)
        return phases
