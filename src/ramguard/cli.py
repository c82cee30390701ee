"""
ramguard CLI

Command-line interface for running and inspecting the memory watchdog.
"""

import argparse
import logging
import signal
import sys
import threading

from ramguard.catalog import RejectReason
from ramguard.config import ConfigError, WatchdogConfig, load_config
from ramguard.coordinator import Coordinator
from ramguard.probe import ProbeError
from ramguard.store import SqliteStore

logger = logging.getLogger(__name__)

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: str) -> None:
    """Install the root log handler."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )


def _open_store(config: WatchdogConfig) -> SqliteStore | None:
    try:
        return SqliteStore(config.database_path)
    except Exception as exc:
        logger.warning("Database unavailable (%s), running without persistence", exc)
        return None


def shutdown(coordinator: Coordinator, store: SqliteStore | None) -> None:
    """Stop sampling, then close the store once no cycle can still write to it."""
    coordinator.stop()
    if coordinator.is_running:
        logger.info("Waiting for the in-flight remediation cycle to finish")
        coordinator.stop(timeout=None)
    if store is not None:
        store.close()


def cmd_run(args, config: WatchdogConfig) -> int:
    """Run the watchdog headless until interrupted."""
    store = _open_store(config)
    coordinator = Coordinator.from_config(config, store=store)
    done = threading.Event()

    def _shutdown(signum, frame):
        logger.info("Received %s, shutting down", signal.Signals(signum).name)
        done.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    coordinator.start()
    done.wait()
    shutdown(coordinator, store)
    return 0


def cmd_tui(args, config: WatchdogConfig) -> int:
    """Run the Textual dashboard."""
    from ramguard.app import RamguardApp

    RamguardApp(config=config, store=_open_store(config)).run()
    return 0


def cmd_status(args, config: WatchdogConfig) -> int:
    """Take one sample and show memory and detector state."""
    coordinator = Coordinator.from_config(config)
    try:
        snapshot = coordinator.probe.sample()
    except ProbeError as exc:
        print(f"❌ {exc}")
        return 1

    status = coordinator.status()
    print("🛡️  ramguard status")
    print("=" * 40)
    print(f"RAM: {snapshot.percent:.2f}% ({snapshot.used_mb:.0f}/{snapshot.total_mb:.0f}MB)")
    print(f"Swap: {snapshot.swap_percent:.2f}% ({snapshot.swap_used_mb:.0f}/{snapshot.swap_total_mb:.0f}MB)")
    print("Load: {:.2f} {:.2f} {:.2f}".format(*snapshot.load_avg))
    print()
    print(f"Threshold: {config.threshold}%")
    print(f"Interval: {config.monitor_interval_ms}ms")
    print(f"Required breaches: {status['detector']['required_consecutive']}")
    print(f"Auto-kill: {'enabled' if config.enable_auto_kill else 'disabled'}")
    print()
    stats = coordinator.catalog.stats()
    print(f"Processes ({stats['user']}): {stats['total_processes']} total, {stats['killable_processes']} killable")
    print(f"Killable memory: {stats['killable_memory_mb']}MB")
    return 0


def cmd_candidates(args, config: WatchdogConfig) -> int:
    """List killable processes."""
    coordinator = Coordinator.from_config(config)
    candidates = coordinator.catalog.top(args.limit)
    if not candidates:
        print("No killable processes")
        return 0
    print(f"{'PID':>8} {'MEM(MB)':>10} {'MEM%':>6} {'CPU%':>6}  COMMAND")
    for c in candidates:
        print(f"{c.pid:>8} {c.memory_mb:>10.1f} {c.memory_percent:>6.1f} {c.cpu_percent:>6.1f}  {c.full_command[:60]}")
    return 0


def cmd_dry_run(args, config: WatchdogConfig) -> int:
    """Show what a remediation would terminate."""
    plan = Coordinator.from_config(config).dry_run_preview(args.max_kills)
    if not plan.targets:
        print("Nothing would be killed")
        return 0
    for target in plan.targets:
        print(f"would kill {target.command} (PID {target.pid}) {target.memory_mb:.1f}MB")
    print(f"Estimated memory freed: {plan.estimated_memory_mb:.1f}MB")
    return 0


def cmd_kill(args, config: WatchdogConfig) -> int:
    """Terminate one process after validation."""
    coordinator = Coordinator.from_config(config, store=_open_store(config))
    result = coordinator.kill_by_pid(args.pid, args.reason)
    if result.outcome is None:
        reason: RejectReason = result.validation.reason
        print(f"❌ Refused to kill PID {args.pid}: {reason.value}")
        return 2
    outcome = result.outcome
    if outcome.success:
        print(f"✅ PID {outcome.pid} terminated with {outcome.signal} (attempts: {outcome.attempts})")
        return 0
    print(f"❌ PID {outcome.pid} not terminated: {outcome.error}")
    return 1


def cmd_history(args, config: WatchdogConfig) -> int:
    """Show recorded kills and events."""
    store = _open_store(config)
    if store is None:
        return 1
    stats = store.kill_stats()
    print(f"Kills (7d): {stats['total_killed']} ({stats['failed_kills']} failed), "
          f"freed {stats['total_memory_freed_mb']}MB")
    for row in store.killed_processes(args.limit):
        status = "ok" if row["success"] else "FAILED"
        print(f"  PID {row['pid']:>7} {row['name']:<20} {row['memory_mb']:>8.1f}MB {row['signal']:<8} {status}")
    print()
    for event in store.recent_events(args.limit):
        print(f"  [{event['severity']}] {event['type']}: {event['message']}")
    store.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ramguard",
        description="Memory pressure watchdog",
    )
    parser.add_argument("-c", "--config", default="config.yaml", help="Path to YAML config")
    parser.add_argument("--log-level", help="Override the configured log level")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("run", help="Run the watchdog").set_defaults(func=cmd_run)
    subparsers.add_parser("tui", help="Run the dashboard").set_defaults(func=cmd_tui)
    subparsers.add_parser("status", help="Show memory and detector state").set_defaults(func=cmd_status)

    candidates_parser = subparsers.add_parser("candidates", help="List killable processes")
    candidates_parser.add_argument("--limit", type=int, default=10, help="Number of processes")
    candidates_parser.set_defaults(func=cmd_candidates)

    dry_run_parser = subparsers.add_parser("dry-run", help="Preview a remediation")
    dry_run_parser.add_argument("--max-kills", type=int, default=1, help="Processes to target")
    dry_run_parser.set_defaults(func=cmd_dry_run)

    kill_parser = subparsers.add_parser("kill", help="Terminate a process by PID")
    kill_parser.add_argument("pid", type=int, help="Process ID")
    kill_parser.add_argument("--reason", default="Manual kill", help="Reason to record")
    kill_parser.set_defaults(func=cmd_kill)

    history_parser = subparsers.add_parser("history", help="Show recorded kills and events")
    history_parser.add_argument("--limit", type=int, default=10, help="Number of entries")
    history_parser.set_defaults(func=cmd_history)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        print(f"❌ {exc}", file=sys.stderr)
        return 2

    configure_logging(args.log_level or config.log_level)
    return args.func(args, config)


if __name__ == "__main__":
    sys.exit(main())
