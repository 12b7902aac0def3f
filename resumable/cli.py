"""Command line interface for the resumable package."""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from rich.logging import RichHandler

from .cli_progress import UploadProgressDisplay, render_configuration_summary
from .models import ServerConfig, UploadConfig, UploadFile


class CLIError(RuntimeError):
    """Raised when CLI validation/execution fails."""


QUIET_LOGGERS = ("httpx", "httpcore")


def _setup_logging(
    debug: bool,
    silent: bool,
    log_level: Optional[str],
    default_level: Optional[str] = None,
) -> str:
    """
    Route logging through a RichHandler.

    ``upload`` defaults to silent so progress bars stay readable; ``serve``
    passes ``default_level="INFO"``. ``--debug``, ``--log-level`` and
    ``LOG_LEVEL`` override either default. Returns the effective mode.
    """
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
    logging.disable(logging.NOTSET)

    requested = "DEBUG" if debug else (log_level or os.getenv("LOG_LEVEL") or default_level)
    if silent or not requested:
        logging.disable(logging.CRITICAL)
        root_logger.setLevel(logging.CRITICAL + 1)
        return "silent"

    level = getattr(logging, requested.upper(), logging.INFO)
    handler = RichHandler(rich_tracebacks=True, markup=False, show_path=False)
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
    # one line per request is noise unless debugging
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(level if debug else max(level, logging.WARNING))
    return logging.getLevelName(level)


def _strip_optional_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
        return value[1:-1]
    return value


def _parse_env(content: str) -> Dict[str, str]:
    """Parse ``KEY=value`` lines; comments, blanks and malformed lines are skipped."""
    values: Dict[str, str] = {}
    for raw_line in content.splitlines():
        line = raw_line.strip()
        if line.startswith("export "):
            line = line[len("export "):].strip()
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not key or key.startswith("#"):
            continue
        values[key] = _strip_optional_quotes(value.strip())
    return values


def _load_env_file(path: Path, override: bool = False) -> List[str]:
    """Export a .env file into ``os.environ``; returns the keys that were set."""
    if not path.is_file():
        raise CLIError(f"env file not found: {path}" if not path.exists() else f"env path is not a file: {path}")
    try:
        values = _parse_env(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise CLIError(f"could not read env file {path}: {exc}") from exc

    applied = [key for key in values if override or key not in os.environ]
    for key in applied:
        os.environ[key] = values[key]
    return applied


def _resolve_default_env_file() -> Optional[Path]:
    default_env = Path(".env")
    return default_env if default_env.is_file() else None


def _collect_files(sources: Sequence[Path]) -> List[UploadFile]:
    files = []
    for source in sources:
        path = Path(source).expanduser()
        if not path.exists():
            raise CLIError(f"source does not exist: {path}")
        if not path.is_file():
            raise CLIError(f"source is not a file: {path}")
        files.append(UploadFile.from_path(path))
    return files


async def _run_upload(files: Sequence[UploadFile], group_id: str, config: UploadConfig) -> int:
    from .orchestrator import UploadScheduler
    from .services.transport import HTTPTransferClient

    with UploadProgressDisplay() as display:
        async with HTTPTransferClient(config.endpoint, timeout=config.timeout) as transport:
            async with UploadScheduler(transport, config) as scheduler:
                scheduler.on_progress(display.on_progress)
                scheduler.on_success(display.on_success)
                scheduler.on_failure(display.on_failure)

                task_ids = scheduler.enqueue(files, group_id)
                if not task_ids:
                    raise CLIError("nothing to upload")
                progress = scheduler.progress
                for task_id in task_ids:
                    display.add_file(task_id, progress[task_id].filename, progress[task_id].total_bytes)

                await scheduler.wait()

    display.render_summary()
    return 0 if not display.failed else 1


def _serve(config: ServerConfig) -> int:
    import uvicorn

    from .app import create_app

    app = create_app(config)
    uvicorn.run(app, host=config.host, port=config.port, log_config=None)
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="resumable",
        description="Resumable chunked uploads: tus server and batch upload client.",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Load environment variables from this .env file",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logs")
    parser.add_argument("--silent", action="store_true", help="Only print errors")
    parser.add_argument(
        "--log-level",
        default=None,
        help="Explicit log level (DEBUG/INFO/WARNING/ERROR)",
    )
    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Run the upload server")
    serve.add_argument("--host", default=None, help="Bind address (default from HOST or 127.0.0.1)")
    serve.add_argument("--port", type=int, default=None, help="Port (default from PORT or 3000)")
    serve.add_argument("--uploads-dir", type=Path, default=None, help="Final destination root")
    serve.add_argument("--tmp-dir", type=Path, default=None, help="Directory for in-progress uploads")
    serve.add_argument("--mount-path", default=None, help="URL path of the tus endpoint (default /files)")

    upload = sub.add_parser("upload", help="Upload files as one group")
    upload.add_argument("files", nargs="+", type=Path, help="Files to upload")
    upload.add_argument("-g", "--group", required=True, help="Group identifier for this batch")
    upload.add_argument("-e", "--endpoint", default=None, help="tus endpoint URL")
    upload.add_argument("-n", "--max-concurrent", type=int, default=None, help="Concurrent uploads (default 3)")
    upload.add_argument(
        "--retry-delays",
        default=None,
        help="JSON array of retry delays in ms (default [0, 3000, 5000, 10000])",
    )
    upload.add_argument("--chunk-size", type=int, default=None, help="Chunk size in bytes")
    return parser


def run_cli(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    used_env_file = args.env_file or _resolve_default_env_file()
    if used_env_file is not None:
        try:
            _load_env_file(Path(used_env_file))
        except CLIError as exc:
            print(f"ERROR: {exc}", file=sys.stderr)
            return 1

    effective_log_mode = _setup_logging(
        debug=args.debug,
        silent=args.silent,
        log_level=args.log_level,
        default_level="INFO" if args.command == "serve" else None,
    )

    if args.command is None:
        parser.print_help()
        return 0

    try:
        if args.command == "serve":
            config = ServerConfig.from_env(
                host=args.host,
                port=args.port,
                uploads_dir=args.uploads_dir,
                tmp_dir=args.tmp_dir,
                mount_path=args.mount_path,
            )
            render_configuration_summary(
                {
                    "Mode": "serve",
                    "Listen": f"http://{config.host}:{config.port}{config.mount_path}",
                    "Uploads Dir": str(config.uploads_dir),
                    "Temp Dir": str(config.tmp_dir),
                    "Env File": str(used_env_file) if used_env_file else "-",
                    "Logging": effective_log_mode,
                }
            )
            return _serve(config)

        config = UploadConfig.from_env(
            endpoint=args.endpoint,
            max_concurrent_uploads=args.max_concurrent,
            retry_delays=args.retry_delays,
            chunk_size=args.chunk_size,
        )
        files = _collect_files(args.files)
        if not config.endpoint.startswith(("http://", "https://")):
            raise CLIError(f"endpoint must be an absolute URL, got {config.endpoint!r} (use --endpoint)")
        render_configuration_summary(
            {
                "Mode": "upload",
                "Files": len(files),
                "Group": args.group,
                "Endpoint": config.endpoint,
                "Max Concurrent": config.max_concurrent_uploads,
                "Retry Delays": list(config.retry_delays),
                "Chunk Size": config.chunk_size,
                "Env File": str(used_env_file) if used_env_file else "-",
                "Logging": effective_log_mode,
            }
        )
        return asyncio.run(_run_upload(files, args.group, config))
    except CLIError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Cancelled.", file=sys.stderr)
        return 130


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()
