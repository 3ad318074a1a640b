"""Job administration commands against the postflow admin API."""

from typing import List, Optional

import typer
from rich.table import Table

from postflow_cli.utils import console, format_timestamp, request

app = typer.Typer(no_args_is_help=True)

STATUS_STYLES = {
    "completed": "green",
    "failed": "red",
    "processing": "yellow",
    "request": "cyan",
    "pending": "dim",
    "delete_failed": "red",
    "delete_completed": "green",
}


def _print_bulk(result: dict) -> None:
    console.print(result["message"], style="green")
    if result.get("skipped_ids"):
        console.print(f"Skipped: {', '.join(str(i) for i in result['skipped_ids'])}", style="yellow")
    for error in result.get("errors", []):
        console.print(f"  {error}", style="yellow")


@app.command("list")
def list_jobs(
    status: Optional[str] = typer.Option(None, help="Filter by status"),
    job_type: Optional[str] = typer.Option(None, "--type", help="Filter by job type (post, comment, coupas)"),
    search: Optional[str] = typer.Option(None, help="Search subject, description and result"),
    page: int = typer.Option(1, help="Page number"),
    limit: int = typer.Option(20, help="Jobs per page"),
) -> None:
    """List jobs."""
    params = {"status": status, "type": job_type, "search": search, "page": page, "limit": limit}
    data = request("GET", "/jobs", params={k: v for k, v in params.items() if v is not None})

    jobs = data.get("data", [])
    if not jobs:
        console.print("No jobs found.")
        return

    table = Table(title="Jobs")
    table.add_column("ID", style="cyan")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Subject")
    table.add_column("Scheduled", style="blue")
    table.add_column("Latest log")

    for job in jobs:
        style = STATUS_STYLES.get(job["status"], "")
        latest = job.get("latest_log") or {}
        table.add_row(
            str(job["id"]),
            job["type"],
            f"[{style}]{job['status']}[/{style}]" if style else job["status"],
            job.get("subject") or "-",
            format_timestamp(job.get("scheduled_at")),
            latest.get("message", "-"),
        )

    console.print(table)
    pagination = data["pagination"]
    console.print(f"Page {pagination['page']}/{max(pagination['total_pages'], 1)} ({pagination['total_count']} jobs)")


@app.command("logs")
def logs(job_id: int = typer.Argument(..., help="Job ID")) -> None:
    """Show the log lines of a job."""
    entries = request("GET", f"/jobs/{job_id}/logs")
    if not entries:
        console.print("No logs.")
        return
    for entry in entries:
        style = {"error": "red", "warn": "yellow"}.get(entry["level"], "")
        line = f"{format_timestamp(entry['created_at'])} [{entry['level']}] {entry['message']}"
        console.print(line, style=style or None)


@app.command("retry")
def retry(job_id: int = typer.Argument(..., help="Job ID")) -> None:
    """Re-queue a failed or completed job."""
    console.print(request("POST", f"/jobs/{job_id}/retry")["message"], style="green")


@app.command("delete")
def delete(job_id: int = typer.Argument(..., help="Job ID")) -> None:
    """Delete a job and its logs."""
    console.print(request("DELETE", f"/jobs/{job_id}")["message"], style="green")


@app.command("promote")
def promote(job_id: int = typer.Argument(..., help="Job ID")) -> None:
    """Move a pending job to request."""
    console.print(request("POST", f"/jobs/{job_id}/request")["message"], style="green")


@app.command("demote")
def demote(job_id: int = typer.Argument(..., help="Job ID")) -> None:
    """Move a requested job back to pending."""
    console.print(request("POST", f"/jobs/{job_id}/pending")["message"], style="green")


@app.command("bulk-retry")
def bulk_retry(
    job_ids: Optional[List[int]] = typer.Argument(None, help="Job IDs; omit with --all"),
    all_jobs: bool = typer.Option(False, "--all", help="Select every job matching the filters"),
    status: Optional[str] = typer.Option(None, help="Filter for --all"),
    job_type: Optional[str] = typer.Option(None, "--type", help="Filter for --all"),
) -> None:
    """Retry failed jobs in bulk; jobs in other states are reported and left alone."""
    if not all_jobs and not job_ids:
        console.print("Pass job ids or --all", style="red")
        raise typer.Exit(1)
    selection = {
        "mode": "all" if all_jobs else "page",
        "include_ids": job_ids or [],
        "filters": {"status": status, "type": job_type},
    }
    _print_bulk(request("POST", "/jobs/bulk/retry", json=selection))
