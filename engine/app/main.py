import argparse
import logging
import os
import sys
import threading

from .config import load_config, settings
from .errors import BackupError
from .ledger import RunLedger
from .logging_config import setup_logging
from .service import BackupService
from .shutdown import ShutdownState

logger = logging.getLogger("backupd.main")


def start_dashboard(service: BackupService):
    import uvicorn

    from api.app.main import create_app

    web = service.config.web
    server = uvicorn.Server(uvicorn.Config(create_app(service), host=web.host, port=web.port, log_level="warning"))
    thread = threading.Thread(target=server.run, name="backupd-web", daemon=True)
    thread.start()
    service.events.info("scheduler", f"Starting web dashboard on http://localhost:{web.port}")
    return server, thread


def follow_events(service: BackupService, out=sys.stdout) -> None:
    """Console live-log view; returns once the service closes the stream."""
    with service.subscribe() as subscription:
        for event in subscription:
            print(event.format(), file=out, flush=True)


def build_service(config_path=None) -> BackupService:
    config = load_config(config_path)
    ledger = RunLedger()
    ledger.create_schema()
    return BackupService(config, settings=settings, ledger=ledger)


def run(args) -> int:
    service = build_service(args.config)
    coordinator = service.coordinator
    coordinator.on_force_stop(lambda: os._exit(130))
    coordinator.install_signal_handlers()
    server = None
    try:
        service.start_scheduler()
        if service.config.web.enabled and not args.no_web:
            server, _ = start_dashboard(service)
        console = None
        if not args.quiet:
            console = threading.Thread(target=follow_events, args=(service,), name="backupd-console", daemon=True)
            console.start()
        coordinator.wait()
        state = service.shutdown()
        if server is not None:
            server.should_exit = True
        if console is not None:
            console.join(timeout=2)
    finally:
        coordinator.restore_signal_handlers()
    logger.info("Application exited normally")
    return 0 if state == ShutdownState.STOPPED else 130


def trigger(args) -> int:
    service = build_service(args.config)
    try:
        run_ = service.trigger_job(args.job)
    finally:
        service.shutdown()
    print(f"{run_.job_name}: {run_.status.value} ({run_.size_bytes} bytes, {run_.duration_seconds:.1f}s)")
    if run_.artifact is not None:
        print(f"  artifact: {run_.artifact.path} sha256={run_.artifact.checksum}")
    if run_.error:
        print(f"  error: {run_.error}")
    return 0 if run_.succeeded else 1


def check(args) -> int:
    config = load_config(args.config)
    service = BackupService(config, settings=settings)
    failures = 0
    try:
        for target in config.databases:
            try:
                service.dumper.test_connection(target)
                databases = service.dumper.list_databases(target)
            except BackupError as exc:
                failures += 1
                print(f"{target.name}: FAILED ({exc})")
                continue
            print(f"{target.name}: ok ({', '.join(databases) or 'no user databases'})")
        for uploader in service.uploads.uploaders:
            try:
                uploader.test_connection()
            except BackupError as exc:
                failures += 1
                print(f"upload {uploader.name}: FAILED ({exc})")
                continue
            print(f"upload {uploader.name}: ok")
    finally:
        service.shutdown()
    return 1 if failures else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="backupd", description="Scheduled database backups")
    parser.add_argument("--config", help="backup configuration file (TOML)")
    sub = parser.add_subparsers(dest="command")

    run_parser = sub.add_parser("run", help="run the scheduler until interrupted")
    run_parser.add_argument("--no-web", action="store_true", help="do not start the web dashboard")
    run_parser.add_argument("--quiet", action="store_true", help="do not print the live log")
    run_parser.set_defaults(func=run)

    trigger_parser = sub.add_parser("trigger", help="run one job now and exit")
    trigger_parser.add_argument("job")
    trigger_parser.set_defaults(func=trigger)

    check_parser = sub.add_parser("check", help="test database and upload connections")
    check_parser.set_defaults(func=check)
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        args = parser.parse_args([*(sys.argv[1:] if argv is None else argv), "run"])
    setup_logging()
    logger.info("backupd starting")
    try:
        return args.func(args)
    except BackupError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
