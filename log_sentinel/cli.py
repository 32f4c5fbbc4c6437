import asyncio
import json
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer


app = typer.Typer(help="Log Sentinel: tail log files and directories and alert on keywords")

SAMPLE_MESSAGES = [
    "INFO: Application started successfully",
    "DEBUG: Processing user request",
    "WARN: High memory usage detected",
    "ERROR: Database connection failed",
    "INFO: User login successful",
    "FATAL: System crash detected",
    "DEBUG: Cache hit ratio: 85%",
    "ERROR: Failed to process payment",
    "INFO: Backup completed successfully",
    "Exception: NullPointerException in UserService",
    "INFO: Server health check passed",
    "panic: runtime error: index out of range",
]


def _load(config: Path):
    from .config import load_config
    from .errors import ConfigError

    try:
        return load_config(config).validate()
    except ConfigError as e:
        typer.echo(f"Invalid config {config}: {e}", err=True)
        raise typer.Exit(code=1)


@app.command()
def start(
    config: Path = typer.Option(Path("config.yaml"), "--config", "-c", envvar="LOG_SENTINEL_CONFIG",
                                help="Path to the YAML config file", metavar="PATH"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override settings.log_level"),
    log_file: Optional[str] = typer.Option(None, "--log-file", help="Also write logs to this file", metavar="FILE"),
):
    """Run the monitor until interrupted (Ctrl-C or SIGTERM)."""
    from .errors import SentinelError
    from .runtime import run_monitor
    from .util import setup_logging

    cfg = _load(config)
    setup_logging(log_level or cfg.settings.log_level, log_file)
    try:
        asyncio.run(run_monitor(cfg))
    except KeyboardInterrupt:
        typer.echo("Monitor stopped.")
    except SentinelError as e:
        typer.echo(f"Failed to start: {e}", err=True)
        raise typer.Exit(code=1)


@app.command()
def check(
    config: Path = typer.Option(Path("config.yaml"), "--config", "-c", envvar="LOG_SENTINEL_CONFIG",
                                help="Path to the YAML config file", metavar="PATH"),
):
    """Validate a config file and print what it would watch."""
    cfg = _load(config)
    summary = {
        "files": [r.path for r in cfg.log_files if r.enabled],
        "directories": [
            {"path": r.path, "recursive": r.recursive, "extensions": list(r.extensions)}
            for r in cfg.log_directories if r.enabled
        ],
        "notifiers": [n.type for n in cfg.notifiers if n.enabled],
        "backend": cfg.settings.backend,
    }
    typer.echo(json.dumps(summary, indent=2))


@app.command()
def init(
    path: Path = typer.Argument(Path("config.yaml"), help="Where to write the starter config"),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing file"),
):
    """Write a starter config file."""
    from .config import default_config_yaml

    if path.exists() and not force:
        typer.echo(f"{path} already exists (use --force to overwrite)", err=True)
        raise typer.Exit(code=1)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(default_config_yaml().lstrip(), encoding="utf-8")
    typer.echo(f"Wrote {path}")


@app.command()
def generate(
    file: Path = typer.Argument(Path("test.log"), help="Log file to append to"),
    interval: float = typer.Option(2.0, help="Seconds between lines"),
    count: int = typer.Option(0, help="Stop after this many lines (0 = run until Ctrl-C)"),
):
    """Append sample log lines, some containing alert keywords."""
    typer.echo(f"Writing sample log lines to {file}, Ctrl-C to stop")
    i = 0
    try:
        with file.open("a", encoding="utf-8") as h:
            while count <= 0 or i < count:
                msg = SAMPLE_MESSAGES[i % len(SAMPLE_MESSAGES)]
                line = f"[{datetime.now():%Y-%m-%d %H:%M:%S}] {msg}"
                h.write(line + "\n")
                h.flush()
                typer.echo(line)
                i += 1
                if count <= 0 or i < count:
                    time.sleep(interval)
    except KeyboardInterrupt:
        pass


def main():
    """Entry point for console_scripts."""
    app()


if __name__ == "__main__":
    main()
