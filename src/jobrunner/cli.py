import argparse
import json
import signal
import sys
import threading
from datetime import timedelta
from pathlib import Path

from pydantic import ValidationError
from tqdm import tqdm

from .config import resolve_config
from .logs import setup_logging
from .manager import QueueManager
from .queue.errors import JobQueueError
from .queue.models import Job, JobStatus, utcnow


def _common_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", type=str, help="Config YAML (default: config/default.yaml)")
    common.add_argument("--backend", choices=["sqlite", "redis"], help="Queue backend")
    common.add_argument("--db", dest="db_path", type=str, help="SQLite database path")
    common.add_argument("--redis-url", type=str, help="Redis URL (redis://host:port/db)")
    common.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Log level"
    )
    common.add_argument("--log-format", choices=["json", "console"], help="Log output format")
    return common


def build_parser():
    common = _common_parser()
    parser = argparse.ArgumentParser(
        prog="jobrunner", description="Durable background job queue and worker pool"
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # WORKER
    worker_parser = subparsers.add_parser(
        "worker", parents=[common], help="Run worker pools until interrupted"
    )
    worker_parser.add_argument(
        "--queue", "-q", action="append", dest="queues", help="Queue to serve (repeatable)"
    )
    worker_parser.add_argument("--workers", "-w", type=int, help="Workers per queue")
    worker_parser.add_argument("--job-timeout", type=float, help="Per-job timeout (s)")
    worker_parser.add_argument(
        "--processor",
        "-p",
        action="append",
        dest="processors",
        help="Extra processor 'module:attr' for every served queue (repeatable)",
    )
    worker_parser.add_argument(
        "--drain", action="store_true", help="Exit once the served queues are empty"
    )

    # ENQUEUE
    enqueue_parser = subparsers.add_parser("enqueue", parents=[common], help="Add a job")
    enqueue_parser.add_argument("--queue", "-q", type=str, default="general", help="Target queue")
    enqueue_parser.add_argument("--type", "-t", dest="job_type", required=True, help="Job type")
    enqueue_parser.add_argument("--payload", type=str, default="{}", help="JSON payload")
    enqueue_parser.add_argument("--priority", type=int, help="Priority (higher first)")
    enqueue_parser.add_argument("--max-attempts", type=int, help="Retry ceiling for this job")
    enqueue_parser.add_argument("--delay", type=float, help="Seconds before the job is claimable")
    enqueue_parser.add_argument("--id", dest="job_id", type=str, help="Explicit job id")

    # STATUS
    status_parser = subparsers.add_parser(
        "status", parents=[common], help="Show one job and its history"
    )
    status_parser.add_argument("job_id", help="Job id")

    # QUEUE subcommands (stats, list, retry, delete, cleanup)
    queue_parser = subparsers.add_parser("queue", help="Manage job queues")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")

    stats_parser = queue_subparsers.add_parser("stats", parents=[common], help="Queue counts")
    stats_parser.add_argument("--queue", "-q", type=str, help="Only this queue")

    list_parser = queue_subparsers.add_parser("list", parents=[common], help="List jobs")
    list_parser.add_argument("--queue", "-q", type=str, default="general", help="Queue name")
    list_parser.add_argument(
        "--status", choices=[s.value for s in JobStatus], help="Filter by status"
    )
    list_parser.add_argument("--page", type=int, default=1, help="Page number (1-based)")
    list_parser.add_argument("--limit", type=int, default=20, help="Jobs per page")

    retry_parser = queue_subparsers.add_parser(
        "retry", parents=[common], help="Re-run a failed job"
    )
    retry_parser.add_argument("job_id", help="Failed job id")

    delete_parser = queue_subparsers.add_parser(
        "delete", parents=[common], help="Delete a finished job"
    )
    delete_parser.add_argument("job_id", help="Job id")

    cleanup_parser = queue_subparsers.add_parser(
        "cleanup", parents=[common], help="Drop old finished jobs"
    )
    cleanup_parser.add_argument(
        "--hours", type=float, default=24 * 7, help="Age threshold (default: 168)"
    )
    cleanup_parser.add_argument("--queue", "-q", type=str, help="Only this queue")

    # HEALTH
    subparsers.add_parser("health", parents=[common], help="Health summary (exit 1 if degraded)")

    return parser, queue_parser


def _load_config(args: argparse.Namespace, queue_names=None, processors=None):
    cli_dict = {k: v for k, v in vars(args).items() if v is not None}
    config = resolve_config(cli_dict, config_path=Path(args.config) if args.config else None)

    if queue_names:
        selected = [config.get_queue(name) for name in queue_names]
        config = config.model_copy(update={"queues": selected})
    if processors:
        config = config.model_copy(
            update={
                "queues": [
                    q.model_copy(update={"processors": [*q.processors, *processors]})
                    for q in config.queues
                ]
            }
        )

    setup_logging(config.logging.level, config.logging.format)
    return config


def _print_job(job: Job) -> None:
    print("\n" + "=" * 60)
    print(f"JOB {job.id}")
    print("=" * 60)
    print(f"Queue:                {job.queue}")
    print(f"Type:                 {job.type}")
    print(f"Status:               {JobStatus(job.status).value}")
    print(f"Priority:             {job.priority}")
    print(f"Attempts:             {job.attempts}/{job.max_attempts}")
    print(f"Created:              {job.created_at.isoformat()}")
    if job.completed_at:
        print(f"Finished:             {job.completed_at.isoformat()}")
    if job.last_error:
        print(f"Last error:           {job.last_error}")
    if job.result is not None:
        print(f"Result:               {json.dumps(job.result)}")
    print("=" * 60)


def run_worker(args: argparse.Namespace) -> int:
    config = _load_config(args, queue_names=args.queues, processors=args.processors)
    manager = QueueManager(config)
    try:
        manager.load_processors()
    except (ImportError, AttributeError, TypeError) as e:
        manager.close()
        print(f"Error: cannot load processor: {e}")
        return 2

    stop = threading.Event()

    def handle_signal(signum, frame):
        stop.set()

    previous = {
        sig: signal.signal(sig, handle_signal) for sig in (signal.SIGINT, signal.SIGTERM)
    }

    try:
        manager.start()
        if args.drain:
            _drain(manager, stop)
        else:
            print("Worker is running. Press Ctrl+C to stop.")
            while not stop.wait(1.0):
                pass
        clean = manager.stop()
        stats = manager.get_stats()
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
        manager.close()

    print("\n" + "=" * 60)
    print("WORKER SUMMARY")
    print("=" * 60)
    for name, pool in stats.items():
        print(
            f"{name:<22}processed={pool.processed} succeeded={pool.succeeded} "
            f"retried={pool.retried} failed={pool.failed}"
        )
    print("=" * 60)
    return 0 if clean else 1


def _drain(manager: QueueManager, stop: threading.Event) -> None:
    """Block until no served queue has pending or processing jobs."""

    def outstanding() -> int:
        return sum(s.pending + s.processing for s in manager.get_queue_stats().values())

    initial = outstanding()
    with tqdm(total=initial, desc="Draining queues", unit="job") as bar:
        while not stop.is_set():
            remaining = outstanding()
            if remaining > bar.total:
                bar.total = remaining
            bar.update(max(bar.total - remaining - bar.n, 0))
            if remaining == 0:
                break
            stop.wait(0.2)


def run_enqueue(args: argparse.Namespace) -> int:
    try:
        payload = json.loads(args.payload)
    except json.JSONDecodeError as e:
        print(f"Error: invalid --payload JSON: {e}")
        return 2

    fields = {"type": args.job_type, "payload": payload}
    if args.job_id:
        fields["id"] = args.job_id
    if args.priority is not None:
        fields["priority"] = args.priority
    if args.max_attempts is not None:
        fields["max_attempts"] = args.max_attempts
    if args.delay:
        fields["available_at"] = utcnow() + timedelta(seconds=args.delay)

    manager = QueueManager(_load_config(args))
    try:
        job = manager.enqueue(args.queue, Job(**fields))
    finally:
        manager.close()

    print(job.id)
    return 0


def run_queue_command(args: argparse.Namespace, queue_parser) -> int:
    if args.queue_command is None:
        queue_parser.print_help()
        return 0

    manager = QueueManager(_load_config(args))
    try:
        if args.queue_command == "stats":
            if args.queue:
                stats = {args.queue: manager.get_queue(args.queue).get_queue_stats()}
            else:
                stats = manager.get_queue_stats()
            for name, s in stats.items():
                print("\n" + "=" * 60)
                print(f"QUEUE STATUS: {name}")
                print("=" * 60)
                print(f"Pending:              {s.pending}")
                print(f"Processing:           {s.processing}")
                print(f"Completed:            {s.completed}")
                print(f"Failed:               {s.failed}")
                print(f"Total:                {s.total}")
                print("=" * 60)

        elif args.queue_command == "list":
            jobs, total = manager.get_queue(args.queue).list_jobs(
                status=args.status, page=args.page, limit=args.limit
            )
            print(f"{total} job(s) in {args.queue} (page {args.page})")
            for job in jobs:
                print(
                    f"{job.id}  {JobStatus(job.status).value:<10} {job.type:<20} "
                    f"attempts={job.attempts}/{job.max_attempts}"
                )

        elif args.queue_command == "retry":
            clone = manager.retry_job(args.job_id)
            print(f"Retrying {args.job_id} as {clone.id}")

        elif args.queue_command == "delete":
            manager.delete_job(args.job_id)
            print(f"Deleted {args.job_id}")

        elif args.queue_command == "cleanup":
            removed = manager.cleanup_old_jobs(args.hours, queue_name=args.queue)
            print(f"Removed {removed} job(s) older than {args.hours:g}h")
    finally:
        manager.close()

    return 0


def run_status(args: argparse.Namespace) -> int:
    manager = QueueManager(_load_config(args))
    try:
        job = manager.find_job(args.job_id)
        transitions = manager.get_queue(job.queue).get_transitions(job.id)
    finally:
        manager.close()

    _print_job(job)
    for t in transitions:
        line = f"{t.timestamp.isoformat()}  {t.from_state or '-':>10} -> {t.to_state}"
        if t.error_snippet:
            line += f"  ({t.error_snippet})"
        print(line)
    return 0


def run_health(args: argparse.Namespace) -> int:
    manager = QueueManager(_load_config(args))
    try:
        health = manager.get_health_status()
    finally:
        manager.close()

    print(json.dumps(health, indent=2))
    return 0 if health["status"] == "healthy" else 1


def main():
    parser, queue_parser = build_parser()
    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return

    try:
        if args.command == "worker":
            code = run_worker(args)
        elif args.command == "enqueue":
            code = run_enqueue(args)
        elif args.command == "status":
            code = run_status(args)
        elif args.command == "queue":
            code = run_queue_command(args, queue_parser)
        elif args.command == "health":
            code = run_health(args)
        else:
            parser.print_help()
            code = 0
    except ValidationError as e:
        print(f"Error: invalid configuration or job: {e}")
        sys.exit(2)
    except KeyError as e:
        print(f"Error: {e.args[0] if e.args else e}")
        sys.exit(2)
    except JobQueueError as e:
        print(f"Error: {e}")
        sys.exit(1)

    sys.exit(code)


if __name__ == "__main__":
    main()
