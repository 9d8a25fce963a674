#!/usr/bin/env python3
"""
Command line interface for running import workers and inspecting jobs.
"""
import argparse
import signal
import sys
from typing import List, Optional

from rich.console import Console
from rich.live import Live
from rich.table import Table

from import_engine.core.config import settings
from import_engine.core.logging_config import configure_logging
from import_engine.domain.imports.errors import JobNotFoundError
from import_engine.domain.imports.progress import ImportProgress, ProgressReporter
from import_engine.domain.imports.worker import ImportWorkerPool, process_job_inline

STATUS_STYLES = {
    "completed": "green",
    "failed": "red",
    "paused": "yellow",
}


def render_progress(progress: ImportProgress) -> Table:
    """Two-column table with the counters of one job."""
    style = STATUS_STYLES.get(progress.status, "cyan")
    table = Table(title=f"Import job {progress.job_id}", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Status", f"[{style}]{progress.status}[/{style}]")
    total = progress.total_rows if progress.total_rows is not None else "?"
    percent = f" ({progress.percent:.1f}%)" if progress.percent is not None else ""
    table.add_row("Rows", f"{progress.processed_rows} / {total}{percent}")
    table.add_row("Imported", str(progress.success_count))
    table.add_row("Duplicates", str(progress.duplicate_count))
    table.add_row("Rejected", str(progress.error_count))
    if progress.errors_not_logged:
        table.add_row("Rejections not detailed", str(progress.errors_not_logged))
    if progress.rows_per_second:
        table.add_row("Rows/second", f"{progress.rows_per_second:.1f}")
    if progress.eta_seconds is not None:
        table.add_row("ETA", f"{progress.eta_seconds:.0f}s")
    if progress.failure_reason:
        table.add_row("Failure", f"[red]{progress.failure_reason}[/red]")
    return table


def _run_worker(args: argparse.Namespace, console: Console) -> int:
    pool = ImportWorkerPool(max_workers=args.max_workers, poll_interval=args.poll_interval)
    if args.once:
        pool.recover_stranded_jobs()
        pool.run_until_idle()
        pool.stop()
        return 0

    def _shutdown(signum, frame):
        console.print("[yellow]Stopping worker pool...[/yellow]")
        pool.stop(wait=False)

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)
    console.print(f"[bold]Import worker pool[/bold] running with {pool.max_workers} slot(s)")
    pool.run_forever()
    return 0


def _run_process(args: argparse.Namespace, console: Console) -> int:
    job = process_job_inline(args.job_id)
    if job is None:
        console.print(f"[yellow]Job {args.job_id} could not be claimed (finished or held by another worker)[/yellow]")
        return 1
    console.print(render_progress(ProgressReporter().snapshot(job["id"])))
    return 0 if job["status"] != "failed" else 2


def _run_watch(args: argparse.Namespace, console: Console) -> int:
    reporter = ProgressReporter(poll_interval=args.interval)
    try:
        with Live(console=console, refresh_per_second=4) as live:
            for progress in reporter.watch(args.job_id):
                live.update(render_progress(progress))
    except JobNotFoundError as exc:
        console.print(f"[red]❌ {exc}[/red]")
        return 1
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Bulk Import Engine - workers and job inspection",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s worker                      # Run the worker pool until interrupted
  %(prog)s worker --once               # Drain the queue and exit
  %(prog)s process <job-id>            # Process one job on this process
  %(prog)s watch <job-id>              # Follow a job's progress
        """,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    worker = subparsers.add_parser("worker", help="Run the import worker pool")
    worker.add_argument("--max-workers", type=int, default=settings.import_max_concurrent_jobs,
                        help="Maximum number of jobs processed concurrently")
    worker.add_argument("--poll-interval", type=float, default=settings.import_worker_poll_seconds,
                        help="Seconds between queue polls")
    worker.add_argument("--once", action="store_true", help="Process everything queued, then exit")

    process = subparsers.add_parser("process", help="Run one job synchronously")
    process.add_argument("job_id")

    watch = subparsers.add_parser("watch", help="Poll a job's progress until it finishes")
    watch.add_argument("job_id")
    watch.add_argument("--interval", type=float, default=settings.import_progress_poll_seconds,
                       help="Seconds between polls")

    args = parser.parse_args(argv)
    configure_logging(settings.log_level)
    console = Console()

    handlers = {"worker": _run_worker, "process": _run_process, "watch": _run_watch}
    return handlers[args.command](args, console)


if __name__ == "__main__":
    sys.exit(main())
