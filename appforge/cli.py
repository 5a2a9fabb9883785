"""
AppForge CLI - Command line interface for the build core.

Usage:
    appforge --help                       Show all commands
    appforge serve                        Start the API server
    appforge worker                       Run the build worker loop
    appforge worker --once                Process at most one queued build
    appforge migrate                      Run database migrations
    appforge inspect app.aab -p com.x.y   Check an artifact against store policy
    appforge cleanup                      Purge old build jobs and artifacts
"""

import asyncio
import signal
from pathlib import Path

import typer

app = typer.Typer(
    name="appforge",
    help="AppForge CLI - Build and publish orchestration",
    no_args_is_help=True,
)


# --- Printer helpers ---


def _print_success(message: str) -> None:
    """Print a success message."""
    typer.echo(f"  ✅ {message}")


def _print_warning(message: str) -> None:
    """Print a warning message."""
    typer.echo(f"  ⚠️ {message}")


def _print_error(message: str) -> None:
    """Print an error message to stderr."""
    typer.echo(f"❌ {message}", err=True)


@app.command()
def worker(
    once: bool = typer.Option(False, "--once", help="Process at most one job and exit"),
):
    """Run the build worker (claims queued jobs and builds them)."""
    from appforge.core.logging import setup_logging
    from appforge.dependencies import get_build_worker

    setup_logging("worker")
    build_worker = get_build_worker()

    async def run() -> None:
        if once:
            job = await build_worker.run_once()
            if job is None:
                typer.echo("No queued builds")
            else:
                typer.echo(f"Build {job.id} finished: {job.status.value}")
            return

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)
        await build_worker.run_forever(stop)

    asyncio.run(run())


@app.command()
def inspect(
    artifact: Path = typer.Argument(..., help="Path to an .apk or .aab"),
    package: str = typer.Option(..., "--package", "-p", help="Expected package name"),
    previous_version_code: int | None = typer.Option(
        None, "--previous-version-code", help="Version code currently published"
    ),
):
    """Inspect a build artifact and evaluate store policy."""
    from appforge.config import get_config
    from appforge.core.logging import setup_logging
    from appforge.inspection.inspector import ArtifactInspector

    setup_logging("cli")

    inspector = ArtifactInspector(get_config().inspection)
    result = asyncio.run(inspector.inspect(artifact, package, previous_version_code))

    if result.metadata is not None:
        m = result.metadata
        typer.echo(f"\n📦 {m.package_name} {m.version_name or ''} (versionCode {m.version_code})")
        typer.echo(f"   minSdk={m.min_sdk} targetSdk={m.target_sdk} debuggable={m.debuggable}")
        typer.echo(f"   permissions: {len(m.permissions)}")

    for warning in result.warnings:
        _print_warning(warning)

    if not result.valid:
        for error in result.errors:
            _print_error(error)
        raise typer.Exit(1)

    _print_success("Artifact passes store policy")


@app.command()
def cleanup():
    """Purge finished build jobs and prune artifacts past retention."""
    from appforge.core.logging import setup_logging
    from appforge.dependencies import get_build_worker

    setup_logging("worker")

    stats = asyncio.run(get_build_worker().run_retention())
    _print_success(f"Purged {stats['jobs_purged']} jobs, pruned {stats['artifacts_pruned']} artifacts")


@app.command()
def migrate():
    """Run database migrations (alembic upgrade head)."""
    import subprocess

    result = subprocess.run(["alembic", "upgrade", "head"], check=False)
    raise typer.Exit(result.returncode)


@app.command()
def serve(
    reload: bool = typer.Option(False, "--reload", "-r", help="Enable hot reload"),
    port: int = typer.Option(8000, "--port", "-p", help="Port to run on"),
):
    """Start the API server."""
    import subprocess

    cmd = ["uvicorn", "appforge.main:app", "--host", "0.0.0.0", "--port", str(port)]
    if reload:
        cmd.append("--reload")

    subprocess.run(cmd, check=False)


if __name__ == "__main__":
    app()
