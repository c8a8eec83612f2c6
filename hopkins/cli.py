from __future__ import annotations

import argparse
import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from hopkins.chain import walk_chain
from hopkins.config import Config
from hopkins.daemon import DEFAULT_POLL_SECONDS, Daemon
from hopkins.dispatch import QueueManager
from hopkins.errors import HopkinsError
from hopkins.logs import setup_logging
from hopkins.models import UTC
from hopkins.worker import TaskWorker

DEFAULT_CONFIG = "hopkins.yaml"
DEFAULT_PREVIEW_COUNT = 5

logger = logging.getLogger("hopkins")


def command_validate(config_path: Path) -> int:
    config = Config(config_path, logger=logger)
    status = config.load()
    if status.failed:
        print(f"Config invalid: {config_path}")
        for error in status.errors:
            print(f"- {error}")
        return 1

    generation = config.generation
    if generation is None:
        raise HopkinsError(f"unable to load {config_path}: {status.errmsg}")
    enabled_count = sum(1 for task in generation.tasks.values() if task.enabled)
    print(f"Config valid: {config_path}")
    print(f"State root: {generation.state_root}")
    print(f"Queues: {len(generation.queues)}")
    for queue in generation.queues.values():
        print(f"- {queue.name}: concurrency={queue.concurrency}")
    print(f"Total tasks: {len(generation.tasks)}")
    print(f"Enabled tasks: {enabled_count}")
    for task in generation.tasks.values():
        if task.schedule is None:
            schedule_text = "chain-only"
        else:
            schedule_text = ", ".join(task.schedule.expressions) or "no cron entries"
        line = f"- {task.name} [{task.queue}] {task.target}: {schedule_text}"
        successors = [successor.name for successor in walk_chain(task)]
        if successors:
            line += f" -> {' -> '.join(successors)}"
        print(line)
    return 0


def command_preview(config_path: Path, task_name: Optional[str], count: int) -> int:
    config = Config(config_path, logger=logger)
    status = config.load()
    if not status.ok:
        raise HopkinsError(f"unable to load {config_path}: {status.errmsg}")

    names = config.get_task_names()
    if task_name:
        if task_name not in names:
            raise HopkinsError(f'Unknown task "{task_name}".')
        names = [task_name]

    now_utc = datetime.now(tz=UTC)
    for name in names:
        task = config.get_task_info(name)
        if task is None or task.schedule is None:
            continue
        print("=" * 80)
        print(f"Task: {task.name} (enabled={task.enabled}, queue={task.queue})")
        print(f"Cron: {', '.join(task.schedule.expressions) or '(none)'} ({task.schedule.timezone_name})")
        print(f"Next {count} run(s):")
        runs = task.schedule.next_occurrences(count, after=now_utc)
        if not runs:
            print("- none")
        for run_dt in runs:
            print(f"- {run_dt.astimezone(task.schedule.timezone).isoformat()}")
    print("=" * 80)
    return 0


def command_daemon(
    config_path: Path,
    poll_seconds: int,
    timeout: Optional[int],
    fatal_after: Optional[int] = None,
) -> int:
    config = Config(config_path, logger=logger)
    worker = TaskWorker(working_dir=config_path.parent, timeout=timeout, logger=logger)
    manager = QueueManager(worker, logger=logger, fatal_after=fatal_after)
    daemon = Daemon(config, manager, logger=logger)
    daemon.start()
    return daemon.run(poll_seconds)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="hopkins job scheduling daemon")
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG,
        help=f"Path to hopkins YAML config (default: {DEFAULT_CONFIG})",
    )
    parser.add_argument("--log-file", help="Also write log output to this file")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("validate", help="Validate config, schedules and chains")

    preview_parser = subparsers.add_parser("preview", help="Show upcoming runs of scheduled tasks")
    preview_parser.add_argument("--task", help="Preview a single task by name")
    preview_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Next run count")

    daemon_parser = subparsers.add_parser("daemon", help="Run the scheduler daemon loop")
    daemon_parser.add_argument(
        "--poll-seconds",
        type=int,
        default=DEFAULT_POLL_SECONDS,
        help=f"Polling interval in seconds (default: {DEFAULT_POLL_SECONDS})",
    )
    daemon_parser.add_argument("--timeout", type=int, help="Kill command-line tasks after this many seconds")
    daemon_parser.add_argument(
        "--fatal-after",
        type=int,
        help="Escalate to the queue onfatal policy after this many consecutive failures",
    )

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_file, logging.DEBUG if args.debug else logging.INFO)
    config_path = Path(args.config).resolve()

    try:
        if args.command == "validate":
            return command_validate(config_path)
        if args.command == "preview":
            if args.count <= 0:
                raise HopkinsError("--count must be >= 1")
            return command_preview(config_path, task_name=args.task, count=args.count)
        if args.command == "daemon":
            if args.poll_seconds <= 0:
                raise HopkinsError("--poll-seconds must be >= 1")
            if args.fatal_after is not None and args.fatal_after <= 0:
                raise HopkinsError("--fatal-after must be >= 1")
            return command_daemon(
                config_path,
                poll_seconds=args.poll_seconds,
                timeout=args.timeout,
                fatal_after=args.fatal_after,
            )
        raise HopkinsError(f"Unsupported command: {args.command}")
    except HopkinsError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
