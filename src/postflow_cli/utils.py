import os
from datetime import datetime
from typing import Any, Optional

import httpx
import typer
from rich.console import Console

console = Console()

BASE_URL = os.environ.get("POSTFLOW_BASE_URL", "http://localhost:8010/v1")


def request(method: str, path: str, **kwargs: Any) -> Any:
    """Call the admin API and return the decoded JSON body; exits on errors."""
    try:
        with httpx.Client(base_url=BASE_URL, timeout=30.0) as client:
            response = client.request(method, path, **kwargs)
    except httpx.HTTPError as e:
        console.print(f"Error: cannot reach {BASE_URL}: {e}", style="red")
        raise typer.Exit(1)

    if response.is_error:
        detail: Optional[str] = None
        try:
            detail = response.json().get("detail")
        except ValueError:
            detail = response.text
        console.print(f"Error {response.status_code}: {detail}", style="red")
        raise typer.Exit(1)
    return response.json()


def format_timestamp(value: Optional[int]) -> str:
    if not value:
        return "-"
    return datetime.fromtimestamp(value).strftime("%Y-%m-%d %H:%M:%S")
