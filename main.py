#!/usr/bin/env python3
"""
Flow Mode - Block distractions and run Pomodoro focus sessions.

This application helps you focus by blocking distracting websites and closing
distracting applications for a set duration. It modifies your hosts file for
the length of the session and always restores it afterwards.

Usage:
    python main.py start --duration 1h30m --task "Write report"
    python main.py start --duration 2h --pomodoro 25m --break 5m --daemon
    python main.py stop
    python main.py report
"""

from flowmode.utils.daemon import main

if __name__ == "__main__":
    main()
