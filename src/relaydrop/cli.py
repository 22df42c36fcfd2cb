from __future__ import annotations

import argparse
import socket
import sys
import tempfile
from pathlib import Path

import httpx
import uvicorn
from rich.table import Table

from relaydrop.client.sender import (
    CHUNK_SIZE,
    PARALLEL_UPLOADS,
    SendResult,
    archive_name,
    fetch_info,
    fetch_stats,
    pack_archive,
    resolve_inputs,
    send_archive,
    send_files,
    wait_until_ready,
)
from relaydrop.config import Settings
from relaydrop.log import (
    console,
    make_overall_progress,
    make_transfer_progress,
    setup_logging,
)
from relaydrop.server.app import create_app

DEFAULT_PORT = 3001


def parse_target(target: str) -> str:
    """Parse a target string into a base URL.

    Accepts formats like:
      - host              → http://host:3001
      - host:port         → http://host:port
      - http://host:port  → http://host:port  (passed through)
      - https://host:port → https://host:port (passed through)
    """
    # If the target already has a scheme, use it as-is.
    if target.startswith(("http://", "https://")):
        return target.rstrip("/")

    if ":" in target:
        host, port_str = target.rsplit(":", 1)
        try:
            port = int(port_str)
        except ValueError:
            console.print(f"[red]Invalid port in target: {target}")
            sys.exit(1)
        return f"http://{host}:{port}"
    return f"http://{target}:{DEFAULT_PORT}"


def cmd_serve(args: argparse.Namespace) -> None:
    settings = Settings.from_env().with_overrides(
        host=args.host,
        port=args.port,
        data_dir=args.data_dir,
        uploads_dir=args.uploads_dir,
        sweep_interval=args.sweep_interval,
    )
    setup_logging(settings.log_level_value)

    # Fail fast if the port is already in use.
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((settings.host, settings.port))
        except OSError:
            console.print(
                f"[red]Port {settings.port} is already in use. "
                "Is another relaydrop server running?"
            )
            sys.exit(1)

    app = create_app(settings)
    console.print(
        f"[bold green]relaydrop server[/] starting on "
        f"[cyan]{settings.host}:{settings.port}[/] "
        f"(uploads={settings.uploads_dir}, db={settings.db_path})"
    )
    uvicorn.run(app, host=settings.host, port=settings.port, log_level="warning")


def _send_packed(file_paths: list[Path], base_url: str, args: argparse.Namespace) -> SendResult:
    """Zip the inputs into a temporary archive and send it in chunks."""
    name = archive_name(file_paths)
    with tempfile.TemporaryDirectory(prefix="relaydrop-") as tmp:
        if len(file_paths) == 1 and file_paths[0].suffix.lower() == ".zip":
            archive = file_paths[0]
            name = archive.name
        else:
            packing = make_overall_progress()
            pack_task = packing.add_task(f"Packing {name}", total=len(file_paths))
            with packing:
                archive = pack_archive(
                    file_paths,
                    Path(tmp) / name,
                    progress_callback=lambda n: packing.advance(pack_task, n),
                )

        progress = make_transfer_progress()
        task_id = progress.add_task(name, total=archive.stat().st_size)
        with progress:
            return send_archive(
                archive,
                base_url,
                parallel=args.parallel,
                chunk_size=args.chunk_size,
                expiration_days=args.expires,
                progress_callback=lambda delta: progress.advance(task_id, delta),
                filename=name,
            )


def _send_individually(
    file_paths: list[Path], base_url: str, args: argparse.Namespace
) -> SendResult:
    """Send each input as its own file of one multi-file transfer."""
    total_bytes = sum(p.stat().st_size for p in file_paths)
    label = file_paths[0].name if len(file_paths) == 1 else f"{len(file_paths)} files"
    progress = make_transfer_progress()
    task_id = progress.add_task(label, total=total_bytes)
    with progress:
        return send_files(
            file_paths,
            base_url,
            parallel=args.parallel,
            expiration_days=args.expires,
            progress_callback=lambda delta: progress.advance(task_id, delta),
        )


def cmd_send(args: argparse.Namespace) -> None:
    setup_logging()

    if len(args.targets) < 2:
        console.print("[red]Usage: relaydrop send <paths...> <target>")
        sys.exit(1)

    *raw_paths, target = args.targets
    base_url = parse_target(target)

    try:
        file_paths = resolve_inputs(raw_paths, recursive=args.recursive)
    except FileNotFoundError as exc:
        console.print(f"[red]{exc}")
        sys.exit(1)

    # Quick healthcheck before starting uploads.
    try:
        httpx.get(f"{base_url}/health", timeout=5.0)
    except httpx.ConnectError:
        console.print(f"[red]Cannot connect to server at {base_url}. Is it running?")
        sys.exit(1)
    except httpx.TimeoutException:
        console.print(f"[red]Server at {base_url} did not respond in time.")
        sys.exit(1)

    mode = "individually" if args.individual else "as one archive"
    console.print(
        f"Sending [bold]{len(file_paths)}[/] file(s) {mode} to [cyan]{base_url}[/] "
        f"(parallel={args.parallel})"
    )

    try:
        if args.individual:
            result = _send_individually(file_paths, base_url, args)
        else:
            result = _send_packed(file_paths, base_url, args)
    except (httpx.HTTPError, ValueError, OSError) as exc:
        console.print(f"\n[red]Transfer failed: {exc}")
        sys.exit(1)

    console.print(f"\n[green]Transfer {result.transfer_id} is {result.status.value}.")
    console.print(f"  Share link: [cyan]{base_url}{result.share_url}")
    console.print(f"  Download:   [cyan]{base_url}{result.download_url}")
    console.print(f"  Expires:    {result.expires_at:%Y-%m-%d %H:%M UTC}")


def cmd_info(args: argparse.Namespace) -> None:
    base_url = parse_target(args.target)
    try:
        if args.wait:
            with console.status("Waiting for the upload to finish..."):
                view = wait_until_ready(base_url, args.transfer_id)
        else:
            view = fetch_info(base_url, args.transfer_id)
    except TimeoutError as exc:
        console.print(f"[red]{exc}")
        sys.exit(1)
    except httpx.HTTPStatusError as exc:
        console.print(f"[red]{exc.response.status_code}: transfer not available")
        sys.exit(1)
    except httpx.HTTPError as exc:
        console.print(f"[red]{exc}")
        sys.exit(1)

    table = Table(title=f"Transfer {view.id}", show_header=False)
    table.add_row("File", view.filename)
    table.add_row("Mode", view.mode.value)
    table.add_row("Status", view.status.value)
    table.add_row("Progress", f"{view.progress}% ({view.chunks_completed}/{view.chunks_total})")
    table.add_row("Size", f"{view.uploaded_size}/{view.total_size} bytes")
    table.add_row("Expires", f"{view.expires_at:%Y-%m-%d %H:%M UTC}")
    table.add_row("Downloads", str(view.download_count))
    for f in view.files or []:
        table.add_row(f"  #{f.id}", f"{f.filename} ({f.size} bytes)")
    console.print(table)


def cmd_stats(args: argparse.Namespace) -> None:
    base_url = parse_target(args.target)
    try:
        stats = fetch_stats(base_url)
    except httpx.HTTPError as exc:
        console.print(f"[red]{exc}")
        sys.exit(1)
    console.print(
        f"[bold]{stats.total_transfers}[/] transfers, "
        f"[bold]{stats.total_gb} GB[/] moved, "
        f"[bold]{stats.active_transfers}[/] in progress"
    )


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="relaydrop",
        description="Share large files through expiring links with live progress",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    # --- serve ---
    lp = sub.add_parser("serve", help="Start the relaydrop server")
    lp.add_argument("--host", default=None, help="Bind address (default: 0.0.0.0)")
    lp.add_argument("--port", type=int, default=None, help="Listen port (default: 3001)")
    lp.add_argument("--data-dir", default=None, help="Directory for the database")
    lp.add_argument("--uploads-dir", default=None, help="Directory for received files")
    lp.add_argument(
        "--sweep-interval",
        type=float,
        default=None,
        help="Seconds between expiry sweeps, 0 disables (default: 3600)",
    )
    lp.set_defaults(func=cmd_serve)

    # --- send ---
    sp = sub.add_parser("send", help="Send files to a relaydrop server")
    sp.add_argument(
        "targets",
        nargs="+",
        help="File/directory paths followed by target host[:port]",
    )
    sp.add_argument(
        "--recursive",
        "-r",
        action="store_true",
        help="Recurse into directories",
    )
    sp.add_argument(
        "--parallel",
        "-p",
        type=int,
        default=PARALLEL_UPLOADS,
        help=f"Concurrent chunk uploads (default: {PARALLEL_UPLOADS})",
    )
    sp.add_argument(
        "--chunk-size",
        type=int,
        default=CHUNK_SIZE,
        help=f"Upload chunk size in bytes (default: {CHUNK_SIZE})",
    )
    sp.add_argument(
        "--individual",
        "-i",
        action="store_true",
        help="Send files one by one instead of packing them into a zip",
    )
    sp.add_argument(
        "--expires",
        type=int,
        default=None,
        help="Link lifetime in days, clamped to 3-7 (default: 3)",
    )
    sp.set_defaults(func=cmd_send)

    # --- info ---
    ip = sub.add_parser("info", help="Show a transfer's status")
    ip.add_argument("transfer_id")
    ip.add_argument("target", help="Server host[:port]")
    ip.add_argument(
        "--wait",
        action="store_true",
        help="Block until the transfer is ready or expired",
    )
    ip.set_defaults(func=cmd_info)

    # --- stats ---
    tp = sub.add_parser("stats", help="Show server usage statistics")
    tp.add_argument("target", help="Server host[:port]")
    tp.set_defaults(func=cmd_stats)

    args = parser.parse_args()
    args.func(args)
