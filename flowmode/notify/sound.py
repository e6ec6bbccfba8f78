#!/usr/bin/env python3
import logging

from flowmode.core.models import PomodoroPhase


class SoundNotifier:
    """Mutes notification sound during Work phases and unmutes during breaks"""

    def __init__(self, controls, mute_during_work=True):
        self.controls = controls
        self.mute_during_work = mute_during_work
        self.muted = False

    def on_phase_change(self, phase: PomodoroPhase):
        logging.info(f"Entering {phase.kind.label} (cycle {phase.cycle + 1})")
        if not self.mute_during_work:
            return
        if phase.is_work and not self.muted:
            self.muted = bool(self.controls.mute())
        elif not phase.is_work and self.muted:
            self.controls.unmute()
            self.muted = False

    def on_session_end(self):
        if self.muted:
            self.controls.unmute()
            self.muted = False
