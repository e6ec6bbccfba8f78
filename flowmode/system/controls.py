#!/usr/bin/env python3
import logging
import platform
import subprocess

NIRCMD_PATHS = ["./nircmd.exe", "./assets/nircmd.exe", "nircmd"]


def _try_commands(commands, action):
    """Run candidate commands in order until one exits cleanly"""
    for cmd in commands:
        try:
            result = subprocess.run(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, timeout=10)
        except (OSError, subprocess.SubprocessError) as e:
            logging.debug(f"{cmd[0]} unavailable for {action}: {e}")
            continue
        if result.returncode == 0:
            logging.info(f"Audio {action}d using {cmd[0]}")
            return True
        logging.debug(f"{cmd[0]} exited with {result.returncode} during {action}")
    logging.warning(f"Could not {action} notifications automatically")
    return False


class SystemControls:
    """Platform capability for silencing notification sound"""

    os_type = "unknown"

    def mute(self):
        logging.warning(f"Muting is not supported on this system ({self.os_type})")
        return False

    def unmute(self):
        logging.warning(f"Unmuting is not supported on this system ({self.os_type})")
        return False


class LinuxControls(SystemControls):
    os_type = "linux"

    def mute(self):
        return _try_commands([
            ["pactl", "set-sink-mute", "@DEFAULT_SINK@", "1"],
            ["amixer", "sset", "Master", "mute"],
        ], "mute")

    def unmute(self):
        return _try_commands([
            ["pactl", "set-sink-mute", "@DEFAULT_SINK@", "0"],
            ["amixer", "sset", "Master", "unmute"],
        ], "unmute")


class MacControls(SystemControls):
    os_type = "darwin"

    def mute(self):
        return _try_commands([["osascript", "-e", "set volume output muted true"]], "mute")

    def unmute(self):
        return _try_commands([["osascript", "-e", "set volume output muted false"]], "unmute")


class WindowsControls(SystemControls):
    os_type = "windows"

    def mute(self):
        return _try_commands([[path, "mutesysvolume", "1"] for path in NIRCMD_PATHS], "mute")

    def unmute(self):
        return _try_commands([[path, "mutesysvolume", "0"] for path in NIRCMD_PATHS], "unmute")


def controls_for_platform(os_type=None):
    os_type = (os_type or platform.system()).lower()
    if os_type == "linux":
        return LinuxControls()
    if os_type == "darwin":
        return MacControls()
    if os_type == "windows":
        return WindowsControls()
    return SystemControls()
