#!/usr/bin/env python3
import argparse
import logging
import os
import signal
import sys
import time

import lockfile
from daemon import DaemonContext
from daemon.pidfile import TimeoutPIDLockFile

from flowmode.core.engine import SessionEngine
from flowmode.core.errors import AlreadyActive, FlowmodeError
from flowmode.core.models import Outcome
from flowmode.file_handlers.hosts_file import HostsFileGuard, resolve_hosts_path
from flowmode.file_handlers.session_log import CsvSessionLog, render_report
from flowmode.file_handlers.state import (
    RecoveryMarker,
    pid_is_running,
    read_session_pid,
    session_pidfile,
)
from flowmode.notify.slack import SlackWebhook
from flowmode.notify.sound import SoundNotifier
from flowmode.system.controls import controls_for_platform
from flowmode.system.processes import ProcessWarden
from flowmode.utils.config import Paths, build_session_config, load_config
from flowmode.utils.duration import format_duration

STOP_TIMEOUT = 15


def parse_arguments(argv=None):
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(
        prog="flowmode",
        description="Flow Mode: block distractions and run Pomodoro focus sessions",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p_start = sub.add_parser("start", help="Start a focus session")
    p_start.add_argument("--duration", "-d", required=True,
                         help="Session duration (e.g., 25m, 1h, 90m, 1h30m); sessions shorter than "
                              "one default pomodoro run as a single countdown")
    p_start.add_argument("--task", "-t", help="Task description for logging")
    p_start.add_argument("--slack-webhook-url", "-s", help="Slack webhook URL for notifications")
    p_start.add_argument("--whitelist", action="store_true", help="Use whitelist mode (block all except allowed sites)")
    p_start.add_argument("--pomodoro", help="Pomodoro work session duration (e.g., 25m, 45m)")
    p_start.add_argument("--break", dest="short_break", help="Short break duration (e.g., 5m, 10m)")
    p_start.add_argument("--long-break", help="Long break duration (e.g., 15m, 30m)")
    p_start.add_argument("--cycles", type=int, help="Number of pomodoro cycles before a long break")
    p_start.add_argument("--no-pomodoro", action="store_true", help="Single countdown without Pomodoro phases")
    p_start.add_argument("--daemon", action="store_true", help="Run as a daemon in the background")
    p_start.add_argument("--config", "-c", help="Path to config.toml")

    p_stop = sub.add_parser("stop", help="Stop the running session and restore the hosts file")
    p_stop.add_argument("--config", "-c", help="Path to config.toml")

    sub.add_parser("report", help="Show logged sessions")
    sub.add_parser("status", help="Show the current session")

    p_recover = sub.add_parser("recover", help="Restore a hosts file left behind by a crashed session")
    p_recover.add_argument("--config", "-c", help="Path to config.toml")
    return parser.parse_args(argv)


def configure_logging(paths, verbose=False):
    paths.ensure()
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(paths.log_file),
            logging.StreamHandler()
        ]
    )


def build_guards(config, paths):
    marker = RecoveryMarker(paths.marker_file)
    guard = HostsFileGuard(resolve_hosts_path(config.hosts_file), marker, paths.backup_file,
                           redirect_address=config.redirect_address)
    user_guard = HostsFileGuard(paths.user_hosts_file, marker, paths.user_hosts_backup_file,
                                redirect_address=config.redirect_address, create_missing=True)
    return guard, user_guard


def build_engine(config, paths, webhook_url=None):
    guard, user_guard = build_guards(config, paths)
    url = webhook_url or config.slack_webhook_url
    return SessionEngine(
        guard=guard,
        user_hosts_guard=user_guard,
        warden=ProcessWarden(),
        blocklist=config.blocklist(),
        logger=CsvSessionLog(paths.session_log),
        notifier=SoundNotifier(controls_for_platform(), mute_during_work=config.mute_during_work),
        webhook=SlackWebhook(url) if url else None,
    )


def describe_session(session):
    text = f"{format_duration(session.duration)} session"
    if session.pomodoro is not None:
        p = session.pomodoro
        text += (f", {format_duration(p.work)} pomodoros with {format_duration(p.short_break)} breaks"
                 f" and a {format_duration(p.long_break)} long break every {p.cycles} cycles")
    if session.whitelist_mode:
        text += " (whitelist mode)"
    return text


def print_user_hosts_guidance(hosts_path):
    print("\nFlowMode is using a user-level hosts file for website blocking.")
    print(f"   Location: {hosts_path}")
    print("   For full website blocking, copy its contents to the system hosts file")
    print("   (requires admin rights) or configure your DNS resolver to use it.")
    print("   App blocking and focus timers work without admin rights.\n")


def run_session(engine, session, paths):
    """Start the engine, drive it to a terminal state and report the result"""
    engine.start(session)
    print(f"Flow mode activated: {describe_session(session)}")
    if session.task:
        print(f"Working on: {session.task}")
    if engine.degraded:
        print("Website blocking is disabled for this session (hosts file not writable).")
    elif engine.hosts_path == paths.user_hosts_file:
        print_user_hosts_guidance(engine.hosts_path)

    record = engine.run()

    if engine.release_error is not None:
        print("!" * 72, file=sys.stderr)
        print(f"WARNING: {engine.release_error}", file=sys.stderr)
        print("!" * 72, file=sys.stderr)
        return 1
    print(f"Flow mode session {record.outcome.value} and logged.")
    return 1 if record.outcome is Outcome.FAILED else 0


def run_daemon(session, config, paths, webhook_url=None):
    """Run the focus session as a daemon"""
    context = DaemonContext(
        working_directory=paths.home,
        umask=0o022,
        pidfile=TimeoutPIDLockFile(paths.pid_file, acquire_timeout=0),
        detach_process=True,
        files_preserve=[handler.stream.fileno() for handler in logging.getLogger().handlers
                        if isinstance(handler, logging.FileHandler)],
    )
    print(f"Starting flow mode daemon for {format_duration(session.duration)}...")
    try:
        with context:
            logging.info(f"Daemon started with PID {os.getpid()}")
            engine = build_engine(config, paths, webhook_url)
            run_session(engine, session, paths)
    except (lockfile.AlreadyLocked, lockfile.LockTimeout) as e:
        raise AlreadyActive(f"Another flow mode session holds {paths.pid_file}") from e
    return 0


def run_foreground(session, config, paths, webhook_url=None):
    """Run the focus session in the foreground"""
    pidfile = session_pidfile(paths.pid_file)
    try:
        pidfile.acquire()
    except (lockfile.AlreadyLocked, lockfile.LockTimeout) as e:
        raise AlreadyActive(f"Another flow mode session holds {paths.pid_file}") from e
    except lockfile.LockFailed as e:
        raise FlowmodeError(f"Failed to create PID file {paths.pid_file}: {e}") from e
    try:
        engine = build_engine(config, paths, webhook_url)
        return run_session(engine, session, paths)
    finally:
        pidfile.release()


def cmd_start(args, paths):
    config = load_config(args.config, paths)
    session = build_session_config(
        config,
        args.duration,
        task=args.task,
        whitelist=args.whitelist,
        pomodoro=args.pomodoro,
        short_break=args.short_break,
        long_break=args.long_break,
        cycles=args.cycles,
        no_pomodoro=args.no_pomodoro,
    )

    pid = read_session_pid(paths.pid_file)
    if pid is not None:
        raise AlreadyActive(f"A flow mode session is already running (PID {pid})")

    # Self-check: undo whatever an unclean shutdown left in the hosts file.
    guard, _ = build_guards(config, paths)
    if guard.recover():
        print("Restored a hosts file left modified by a previous session.")

    if args.daemon:
        return run_daemon(session, config, paths, args.slack_webhook_url)
    return run_foreground(session, config, paths, args.slack_webhook_url)


def cmd_stop(args, paths):
    pid = read_session_pid(paths.pid_file)
    if pid is None:
        if RecoveryMarker(paths.marker_file).exists():
            return cmd_recover(args, paths)
        print("No active flow mode session.")
        return 1

    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        print("Process not found; it already exited.")
        return 0
    except PermissionError:
        print(f"Permission denied signalling PID {pid}. Run as the user who started the session.")
        return 1
    print(f"Sent stop request to PID {pid}, waiting for cleanup...")

    deadline = time.monotonic() + STOP_TIMEOUT
    while pid_is_running(pid) and time.monotonic() < deadline:
        time.sleep(0.2)
    if pid_is_running(pid):
        print(f"Session {pid} is still shutting down; check 'flowmode status'.")
        return 1
    print("Flow mode session stopped.")
    return 0


def cmd_report(args, paths):
    session_log = CsvSessionLog(paths.session_log)
    if not os.path.exists(session_log.path):
        print(f"No session log at {session_log.path}. Make sure you have completed at least one session.")
        return 0
    render_report(session_log.read_records(), sys.stdout)
    return 0


def cmd_status(args, paths):
    pid = read_session_pid(paths.pid_file)
    state = RecoveryMarker(paths.marker_file).read()
    print("Status:")
    print(f"- session running: {pid is not None}" + (f" (PID {pid})" if pid else ""))
    if state:
        print(f"- task: {state.get('task') or 'No task specified'}")
        print(f"- started: {state.get('started_at')}")
        print(f"- hosts file modified: {state.get('hosts_path')}")
        if pid is None:
            print("- previous session did not shut down cleanly; run 'flowmode recover'")
    return 0


def cmd_recover(args, paths):
    config = load_config(getattr(args, "config", None), paths)
    guard, _ = build_guards(config, paths)
    if read_session_pid(paths.pid_file) is not None:
        print("A session is still running; use 'flowmode stop' instead.")
        return 1
    if guard.recover():
        print("Restored the hosts file from the saved backup.")
    else:
        print("Nothing to recover.")
    return 0


COMMANDS = {
    "start": cmd_start,
    "stop": cmd_stop,
    "report": cmd_report,
    "status": cmd_status,
    "recover": cmd_recover,
}


def main(argv=None):
    """Main entry point"""
    args = parse_arguments(argv)
    paths = Paths.default()
    configure_logging(paths, args.verbose)

    try:
        rc = COMMANDS[args.command](args, paths)
    except AlreadyActive as e:
        logging.error(str(e))
        rc = 2
    except FlowmodeError as e:
        logging.error(str(e))
        rc = 1
    sys.exit(rc)


if __name__ == "__main__":
    main()
