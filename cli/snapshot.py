"""
Snapshot builder

Builds the sandbox snapshot (agent CLI, pm2, template project, pm2 ecosystem
file) from docker/sandbox.Dockerfile so new sandboxes start from it.
"""

import os
from pathlib import Path
from typing import Callable, Optional

from dotenv import dotenv_values
from rich.console import Console


DEFAULT_SNAPSHOT_NAME = "claude-code-env:1.0.0"
DEFAULT_DOCKERFILE = Path(__file__).resolve().parent.parent / "docker" / "sandbox.Dockerfile"
DEV_VARS_FILE = ".dev.vars"


class SnapshotError(Exception):
    """Snapshot could not be built"""


def resolve_api_key(dev_vars_path: str = DEV_VARS_FILE) -> Optional[str]:
    """DAYTONA_API_KEY from the environment, falling back to .dev.vars"""
    api_key = os.environ.get("DAYTONA_API_KEY")
    if api_key:
        return api_key

    if Path(dev_vars_path).exists():
        return dotenv_values(dev_vars_path).get("DAYTONA_API_KEY") or None
    return None


def create_snapshot(
    api_key: str,
    name: str = DEFAULT_SNAPSHOT_NAME,
    dockerfile: Path = DEFAULT_DOCKERFILE,
    on_logs: Optional[Callable[[str], None]] = None,
) -> None:
    """Build the snapshot, streaming build logs to ``on_logs``"""
    from daytona_sdk import CreateSnapshotParams, Daytona, DaytonaConfig, Image

    dockerfile = Path(dockerfile)
    if not dockerfile.exists():
        raise SnapshotError(f"Dockerfile not found: {dockerfile}")

    daytona = Daytona(DaytonaConfig(api_key=api_key))
    try:
        daytona.snapshot.create(
            CreateSnapshotParams(name=name, image=Image.from_dockerfile(str(dockerfile))),
            on_logs=on_logs,
        )
    except Exception as e:
        raise SnapshotError(str(e)) from e


def run(name: str, dockerfile: Path, console: Console) -> int:
    """CLI handler; returns the process exit code"""
    api_key = resolve_api_key()
    if not api_key:
        console.print(f"[red]✗ DAYTONA_API_KEY not found in the environment or {DEV_VARS_FILE}[/red]")
        return 1

    console.print("[dim]Initializing Daytona client...[/dim]")
    console.print(f"Creating snapshot [bold]{name}[/bold] from [cyan]{dockerfile}[/cyan]")

    try:
        create_snapshot(api_key, name=name, dockerfile=dockerfile, on_logs=lambda chunk: console.print(chunk, end=""))
    except SnapshotError as e:
        console.print(f"\n[red]✗ Failed to create snapshot:[/red] {e}")
        return 1

    console.print(f"\n[green]✓ Snapshot \"{name}\" created successfully![/green]")
    return 0
