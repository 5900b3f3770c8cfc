import argparse
import json
import sys

from pydantic import ValidationError

from . import ffmpeg_runner, pipeline
from .config import resolve_config
from .errors import IntakeRejected, InvalidTransition, JobNotFound
from .logging_setup import configure_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="media-pipeline", description="Asynchronous media variant pipeline"
    )
    parser.add_argument("--config", "-c", type=str, help="Local config override (YAML)")
    parser.add_argument("--db", dest="db_path", type=str, help="Job/queue database path")
    parser.add_argument(
        "--storage-backend", choices=["local", "gcs"], help="Object storage backend"
    )
    parser.add_argument("--storage-root", type=str, help="Root directory for local storage")
    parser.add_argument("--notifier-backend", choices=["log", "pubsub"], help="Event backend")
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Log level"
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # CHECK
    subparsers.add_parser("check", help="Verify ffmpeg/ffprobe and configuration")

    # SUBMIT
    submit_parser = subparsers.add_parser("submit", help="Stage a file and enqueue a job")
    submit_parser.add_argument("file", type=str, help="Image or video file")
    submit_parser.add_argument("--owner", required=True, help="Owning user id")
    submit_parser.add_argument("--conversation", help="Conversation id")
    submit_parser.add_argument("--message", help="Message id")
    submit_parser.add_argument("--mime", help="Declared mime type (guessed from name if omitted)")
    submit_parser.add_argument("--job-id", help="Explicit job id (idempotent resubmit)")

    # WORK / DRAIN
    work_parser = subparsers.add_parser("work", help="Run workers until interrupted")
    work_parser.add_argument("--workers", "-w", type=int, help="Number of worker threads")
    drain_parser = subparsers.add_parser("drain", help="Process the queue until empty")
    drain_parser.add_argument("--workers", "-w", type=int, help="Number of worker threads")
    drain_parser.add_argument("--no-progress", action="store_true", help="Hide progress bar")

    # INSPECT
    subparsers.add_parser("status", help="Show job and queue counts")
    show_parser = subparsers.add_parser("show", help="Show one job")
    show_parser.add_argument("job_id")
    show_parser.add_argument(
        "--transitions", "-t", action="store_true", help="Include the state audit trail"
    )

    # CONTROL
    reprocess_parser = subparsers.add_parser("reprocess", help="Re-process a finished job")
    reprocess_parser.add_argument("job_id")
    reprocess_parser.add_argument("--source", help="New copy of the source file")
    cancel_parser = subparsers.add_parser("cancel", help="Cancel a queued or processing job")
    cancel_parser.add_argument("job_id")
    cancel_parser.add_argument("--reason", default="Cancelled by operator", help="Reason")
    subparsers.add_parser("reconcile", help="Repair records whose queue message is lost")

    # SERVE
    serve_parser = subparsers.add_parser("serve", help="Run the status API")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)

    return parser


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def _print_stats(stats: dict) -> None:
    print("\n" + "=" * 60)
    print("PIPELINE STATUS")
    print("=" * 60)
    for state, count in stats["jobs"].items():
        print(f"{state.capitalize() + ':':<22}{count}")
    print("-" * 60)
    for bucket, count in stats["queue"].items():
        print(f"{'Queue ' + bucket + ':':<22}{count}")
    print("=" * 60)


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    # Convert args to dict, filtering None
    cli_dict = {k: v for k, v in vars(args).items() if v is not None}
    try:
        config = resolve_config(cli_dict, config_path=args.config)
    except ValidationError as e:
        print(f"❌ Invalid configuration:\n{e}", file=sys.stderr)
        return 2
    configure_logging(config.logging)

    if args.command == "check":
        print("Checking dependencies...")
        if not ffmpeg_runner.check_ffmpeg():
            print("❌ ffmpeg/ffprobe NOT found.")
            return 1
        print("✅ ffmpeg and ffprobe found.")
        print(f"✅ Config OK (db: {config.queue.db_path}, storage: {config.storage.backend})")
        return 0

    if args.command == "serve":
        import uvicorn

        from .api.main import create_app

        services = pipeline.build_services(config)
        try:
            uvicorn.run(create_app(services), host=args.host, port=args.port)
        finally:
            services.close()
        return 0

    services = pipeline.build_services(config)
    try:
        return _dispatch(args, services)
    finally:
        services.close()


def _dispatch(args, services: pipeline.Services) -> int:
    if args.command == "submit":
        try:
            job = pipeline.ingest_file(
                services,
                args.file,
                owner_id=args.owner,
                conversation_id=args.conversation,
                message_id=args.message,
                mime_type=args.mime,
                job_id=args.job_id,
            )
        except IntakeRejected as e:
            print(f"❌ Rejected: {e}", file=sys.stderr)
            return 1
        print(f"✅ Job {job.job_id} {job.state.value}")
        return 0

    if args.command == "work":
        outcomes = pipeline.run_workers(services, n_workers=args.workers)
        _print_json(outcomes)
        return 0

    if args.command == "drain":
        outcomes = pipeline.run_workers(
            services, n_workers=args.workers, drain=True, show_progress=not args.no_progress
        )
        print("\n" + "=" * 60)
        print("PROCESSING SUMMARY")
        print("=" * 60)
        for outcome, count in sorted(outcomes.items()):
            print(f"{outcome.capitalize() + ':':<22}{count}")
        print("=" * 60)
        return 0

    if args.command == "status":
        _print_stats(pipeline.get_queue_stats(services))
        return 0

    if args.command == "show":
        job = services.store.get(args.job_id)
        if job is None:
            print(f"❌ Job {args.job_id} not found", file=sys.stderr)
            return 1
        data = job.to_status_dict()
        if args.transitions:
            data["transitions"] = [
                t.model_dump(mode="json") for t in services.store.transitions(args.job_id)
            ]
        _print_json(data)
        return 0

    if args.command in ("reprocess", "cancel"):
        try:
            if args.command == "reprocess":
                job = pipeline.reprocess_job(services, args.job_id, source_path=args.source)
            else:
                job = pipeline.cancel_job(services, args.job_id, reason=args.reason)
        except JobNotFound:
            print(f"❌ Job {args.job_id} not found", file=sys.stderr)
            return 1
        except (InvalidTransition, IntakeRejected) as e:
            print(f"❌ {e}", file=sys.stderr)
            return 1
        print(f"✅ Job {job.job_id} {job.state.value}")
        return 0

    if args.command == "reconcile":
        actions = pipeline.reconcile(services.store, services.queue)
        print(f"Reconciled {len(actions)} job(s)")
        for job_id, action in actions.items():
            print(f"  {job_id}: {action}")
        return 0

    return 0


if __name__ == "__main__":
    sys.exit(main())
