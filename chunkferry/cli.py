from __future__ import annotations

import argparse
import asyncio
import os
from typing import Any, Dict, List, Optional

from colorama import Fore, Style, init as colorama_init
from dotenv import load_dotenv

from chunkferry.config import RetryPolicy, UploaderConfig
from chunkferry.http_transport import HttpTransport
from chunkferry.orchestrator import UploadOrchestrator
from chunkferry.utils.formatting import format_bytes, format_duration, format_speed
from chunkferry.utils.logging import setup_logger

MB = 1024 * 1024


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Parallel chunked uploader")
    p.add_argument("files", nargs="+", metavar="FILE", help="Files to upload")
    p.add_argument("--endpoint", required=True, help="Upload server base URL, e.g. https://host/api")
    p.add_argument("--api-key", help="Bearer token sent with every request (or CHUNKFERRY_API_KEY)")
    p.add_argument("--chunk-size-mb", type=float, help="Chunk size in MiB (default 5)")
    p.add_argument("--max-files", type=int, help="Files uploaded at the same time (default 3)")
    p.add_argument("--max-chunks", type=int, help="Chunks in flight per file (default 3)")
    p.add_argument("--max-retries", type=int, help="Retries per chunk before the file fails (default 3)")
    p.add_argument("--retry-delay-ms", type=int, help="Base delay between chunk retries (default 1000)")
    p.add_argument(
        "--retry-backoff",
        choices=[policy.value for policy in RetryPolicy],
        help="How the retry delay grows with each attempt (default linear)",
    )
    p.add_argument("--speed-limit", type=int, help="Upload limit in bytes per second (0 = unlimited)")
    p.add_argument("--allowed-types", help="Comma-separated MIME types or extensions, e.g. image/*,.pdf")
    p.add_argument("--max-file-size-mb", type=float, help="Reject files larger than this many MiB")
    p.add_argument("--state-dir", help="Keep queue snapshots in this directory")
    p.add_argument("--no-workers", action="store_true", help="Read and send chunks without execution slots")
    p.add_argument("--workers", type=int, help="Number of execution slots (default: CPU count, max 8)")
    p.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    return p


def config_from_args(args: argparse.Namespace) -> UploaderConfig:
    overrides: Dict[str, Any] = {
        "max_concurrent_files": args.max_files,
        "max_concurrent_chunks": args.max_chunks,
        "max_retries": args.max_retries,
        "retry_delay_ms": args.retry_delay_ms,
        "retry_backoff": args.retry_backoff,
        "allowed_types": args.allowed_types,
        "worker_count": args.workers,
        "log_level": args.log_level,
    }
    if args.chunk_size_mb is not None:
        overrides["chunk_size"] = int(args.chunk_size_mb * MB)
    if args.max_file_size_mb is not None:
        overrides["max_file_size"] = int(args.max_file_size_mb * MB)
    if args.speed_limit:
        overrides["speed_limit"] = args.speed_limit
        overrides["enable_speed_limit"] = True
    if args.state_dir:
        overrides["persistence_dir"] = args.state_dir
        overrides["enable_persistence"] = True
    if args.no_workers:
        overrides["use_workers"] = False
    return UploaderConfig.from_env(**overrides)


def banner() -> None:
    print(Fore.GREEN + "chunkferry :: parallel chunked uploads" + Style.RESET_ALL)


class ConsoleReporter:
    """Turns orchestrator events into colored console lines and keeps the tally."""

    def __init__(self) -> None:
        self.ok = 0
        self.failed = 0
        self._last_progress: Dict[str, int] = {}

    def __call__(self, type_: str, data: Any) -> None:
        if type_ == "file_added":
            print(Fore.CYAN + f"+ {data.name} ({format_bytes(data.size)})" + Style.RESET_ALL)
        elif type_ == "file_progress":
            # one line per 10% step is plenty on a terminal
            step = data.progress // 10
            if self._last_progress.get(data.id) != step:
                self._last_progress[data.id] = step
                print(f"  {data.name}: {data.progress}% of {format_bytes(data.size)}")
        elif type_ == "file_success":
            self.ok += 1
            print(Fore.GREEN + f"✔ {data['file'].name}" + Style.RESET_ALL)
        elif type_ == "file_error":
            self.failed += 1
            print(Fore.RED + f"✖ {data['file'].name}: {data['error']}" + Style.RESET_ALL)
        elif type_ == "file_rejected":
            self.failed += 1
            print(Fore.YELLOW + f"! skipped {data['name']}: {data['error']}" + Style.RESET_ALL)
        elif type_ == "performance_update":
            print(
                Style.DIM
                + f"  {format_speed(data.current_speed)}, {format_bytes(data.bytes_transferred)} sent, "
                + f"eta {format_duration(data.eta_ms)}"
                + Style.RESET_ALL
            )


async def upload_files(paths: List[str], config: UploaderConfig, transport: HttpTransport) -> ConsoleReporter:
    reporter = ConsoleReporter()
    orchestrator = UploadOrchestrator(transport.callbacks(), config=config, event_callback=reporter)
    if orchestrator.restored_snapshots:
        print(
            Fore.YELLOW
            + f"{len(orchestrator.restored_snapshots)} unfinished uploads from a previous run; "
            + "stored parts are picked up from the server"
            + Style.RESET_ALL
        )
    try:
        orchestrator.add_files(paths)
        await orchestrator.join()
    finally:
        await orchestrator.destroy()
    return reporter


def run_cli(args: Optional[argparse.Namespace] = None) -> int:
    load_dotenv()
    colorama_init(autoreset=True)
    if args is None:
        args = build_parser().parse_args()
    try:
        config = config_from_args(args)
    except ValueError as e:
        raise SystemExit(f"Invalid configuration: {e}")
    setup_logger(level=config.log_level)
    missing = [path for path in args.files if not os.path.isfile(path)]
    if missing:
        raise SystemExit("No such file: " + ", ".join(missing))
    banner()
    transport = HttpTransport(args.endpoint, api_key=args.api_key or os.getenv("CHUNKFERRY_API_KEY"))
    try:
        reporter = asyncio.run(upload_files(args.files, config, transport))
    finally:
        transport.close()
    print(Fore.GREEN + f"\nFinished: {reporter.ok} uploaded, {reporter.failed} failed." + Style.RESET_ALL)
    return 0 if reporter.failed == 0 else 1
