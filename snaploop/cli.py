"""
Command-line entry point for snaploop.

Parses arguments, tees all console output to a run log, records run
metadata, runs the RunCoordinator, and prints a summary that names every
retained clone.
"""

import argparse
import os
import platform
import shlex
import socket
import sys
import traceback
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from textwrap import dedent

from snaploop.coordinator import RunCoordinator, TerminalReport
from snaploop.errors import InvalidName
from snaploop.execution import DEFAULT_COMMAND, DEFAULT_TEST_ENV, DEFAULT_WORKDIR, TestExecutor
from snaploop.health import HealthMonitor
from snaploop.metadata import generate_run_metadata
from snaploop.naming import SnapshotRef
from snaploop.utils import TeeLogger, safe_timestamp, save_json
from snaploop.volumes import DEFAULT_PRIVILEGE_CMD, CloneManager, ZfsBackend

DEFAULT_LOG_DIR = Path("snaploop_logs")
REPORT_FILE = "run_report.json"
HEALTH_LOG_FILE = "health_events.jsonl"


@dataclass
class RunConfig:
    """Settings for one run, as given on the command line."""

    snapshot: SnapshotRef
    concurrency: int = 2
    stop_after: int | None = None
    keep_success: bool = False
    command: list[str] = field(default_factory=lambda: list(DEFAULT_COMMAND))
    workdir: str = DEFAULT_WORKDIR
    env: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_TEST_ENV))
    privilege_cmd: list[str] = field(default_factory=lambda: list(DEFAULT_PRIVILEGE_CMD))
    log_dir: Path = DEFAULT_LOG_DIR
    verbose: bool = True

    def describe(self) -> dict:
        data = asdict(self)
        data["snapshot"] = str(self.snapshot)
        data["log_dir"] = str(self.log_dir)
        return data


def positive_int(value: str) -> int:
    """argparse type for counts that must be at least 1."""
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected an integer, got {value!r}")
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {number}")
    return number


def env_pair(value: str) -> tuple[str, str]:
    """argparse type for KEY=VALUE environment settings."""
    key, sep, val = value.partition("=")
    if not sep or not key:
        raise argparse.ArgumentTypeError(f"expected KEY=VALUE, got {value!r}")
    return key, val


def snapshot_ref(value: str) -> SnapshotRef:
    """argparse type for ZFS snapshot names."""
    try:
        return SnapshotRef.parse(value)
    except InvalidName as e:
        raise argparse.ArgumentTypeError(str(e))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="snaploop",
        description=(
            "Run a test suite in a loop until it fails, each run in a fresh ZFS "
            "clone of SNAPSHOT. Clones of failing runs are kept for inspection."
        ),
    )
    parser.add_argument(
        "snapshot",
        type=snapshot_ref,
        help="ZFS snapshot to clone for each run (dataset@name).",
    )
    parser.add_argument(
        "--concurrency",
        type=positive_int,
        default=2,
        help="How many concurrent threads run the test suite. (Default: 2)",
    )
    parser.add_argument(
        "--stop-after",
        type=positive_int,
        default=None,
        help="Stop after each thread does this many runs. (Default: run until failure)",
    )
    parser.add_argument(
        "--keep-success",
        action="store_true",
        help="Keep the clones (and output) of successful test runs too.",
    )
    parser.add_argument(
        "--command",
        type=shlex.split,
        default=list(DEFAULT_COMMAND),
        help=f"Test command to run in each clone. (Default: {shlex.join(DEFAULT_COMMAND)!r})",
    )
    parser.add_argument(
        "--workdir",
        default=DEFAULT_WORKDIR,
        help=f"Directory inside the clone to run the command in. (Default: {DEFAULT_WORKDIR})",
    )
    parser.add_argument(
        "--env",
        type=env_pair,
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Extra environment variable for the test command. May be repeated.",
    )
    parser.add_argument(
        "--no-default-env",
        action="store_true",
        help="Do not set "
        + ", ".join(f"{k}={v}" for k, v in DEFAULT_TEST_ENV.items())
        + " for the test command.",
    )
    parser.add_argument(
        "--privilege-cmd",
        type=shlex.split,
        default=list(DEFAULT_PRIVILEGE_CMD),
        help="Prefix for zfs commands that modify datasets; '' to run zfs directly. "
        f"(Default: {shlex.join(DEFAULT_PRIVILEGE_CMD)})",
    )
    parser.add_argument(
        "--log-dir",
        type=Path,
        default=DEFAULT_LOG_DIR,
        help=f"Directory for the run log, metadata, and report. (Default: {DEFAULT_LOG_DIR})",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Only print failures, errors, and the summary; not every attempt.",
    )
    return parser


def parse_args(argv: list[str] | None = None) -> RunConfig:
    """Parse the command line into a RunConfig."""
    args = build_parser().parse_args(argv)
    if not args.command:
        build_parser().error("--command must not be empty")
    env = {} if args.no_default_env else dict(DEFAULT_TEST_ENV)
    env.update(dict(args.env))
    return RunConfig(
        snapshot=args.snapshot,
        concurrency=args.concurrency,
        stop_after=args.stop_after,
        keep_success=args.keep_success,
        command=args.command,
        workdir=args.workdir,
        env=env,
        privilege_cmd=args.privilege_cmd,
        log_dir=args.log_dir,
        verbose=not args.quiet,
    )


def build_coordinator(config: RunConfig, health_monitor: HealthMonitor) -> RunCoordinator:
    """Wire the ZFS backend, the test executor, and the coordinator together."""
    return RunCoordinator(
        snapshot=config.snapshot,
        clone_manager=CloneManager(ZfsBackend(privilege_cmd=config.privilege_cmd)),
        executor=TestExecutor(command=config.command, workdir=config.workdir, extra_env=config.env),
        concurrency=config.concurrency,
        stop_after=config.stop_after,
        keep_success=config.keep_success,
        health_monitor=health_monitor,
    )


def print_report(report: TerminalReport, health_summary: dict[str, int]) -> None:
    """Print the per-thread results and where the retained clones are."""
    for worker in report.workers:
        print(f"thread {worker.worker_id}: {worker.attempts} tries, result = {worker.describe()}")
    if report.error:
        print(f"error: {report.error}")

    print(f"\n- Termination:       {report.reason.value}")
    print(f"- Total Attempts:    {report.total_attempts}")
    print(f"- Duration:          {report.duration_secs:.1f}s")
    if report.working_area:
        print(f"- Working Dataset:   {report.working_area} (remove it when done)")
    if report.retained:
        print("- Retained Clones:")
        for dataset in report.retained:
            print(f"    {dataset}")
    if report.leaked:
        print("- Leaked Clones (not retained, destroy by hand):")
        for dataset in report.leaked:
            print(f"    {dataset}")
    if health_summary:
        print("- Health Events:")
        for key, count in sorted(health_summary.items()):
            print(f"    {key}: {count}")


def main(argv: list[str] | None = None) -> int:
    """Parse command-line arguments and run snaploop. Returns the exit code."""
    config = parse_args(argv)

    config.log_dir.mkdir(parents=True, exist_ok=True)
    run_start_time = datetime.now()
    timestamp_iso = run_start_time.isoformat()
    run_log_path = config.log_dir / f"snaploop_run_{safe_timestamp(timestamp_iso)}.log"

    original_stdout = sys.stdout
    original_stderr = sys.stderr

    # This initial print goes only to the console
    print(f"[+] Starting snaploop. Full log will be at: {run_log_path}")

    tee_logger = TeeLogger(run_log_path, original_stdout, verbose=config.verbose)
    sys.stdout = tee_logger
    sys.stderr = tee_logger

    health_monitor = HealthMonitor(config.log_dir / HEALTH_LOG_FILE)
    report: TerminalReport | None = None
    exit_code = 1

    try:
        metadata = generate_run_metadata(config.log_dir, config.describe())
        header = f"""
================================================================================
SNAPLOOP RUN
================================================================================
- Hostname:          {socket.gethostname()}
- Platform:          {platform.platform()}
- Process ID:        {os.getpid()}
- CPUs:              {metadata["hardware"]["cpu_count_logical"]}
- RAM:               {metadata["hardware"]["total_ram_gb"]} GB
- Log File:          {run_log_path}
- Start Time:        {timestamp_iso}
- Command:           {" ".join(sys.argv)}
- Test Command:      {shlex.join(config.command)} (in <clone>/{config.workdir})
================================================================================
"""
        print(dedent(header))

        coordinator = build_coordinator(config, health_monitor)
        report = coordinator.run()
        exit_code = report.exit_code
    except KeyboardInterrupt:
        print("\n[!] snaploop stopped by user.")
    except Exception as e:
        # Use original stderr for the final error message so it's always visible.
        print(f"\n[!!!] An unexpected error occurred: {e}", file=original_stderr)
        traceback.print_exc(file=original_stderr)
    finally:
        print("\n" + "=" * 80)
        print("SNAPLOOP RUN SUMMARY")
        print("=" * 80)
        if report is not None:
            print_report(report, health_monitor.get_summary())
            save_json(config.log_dir / REPORT_FILE, report.to_dict())
        else:
            print("- Termination:       aborted before the run finished")
        print("=" * 80)

        tee_logger.close()
        sys.stdout = original_stdout
        sys.stderr = original_stderr
        print(f"[+] snaploop finished. Full log saved to: {run_log_path}")

    return exit_code


def entry_point() -> None:
    sys.exit(main())


if __name__ == "__main__":
    entry_point()
