"""Launcher for the sitesnap screenshot API using uvicorn."""

from __future__ import annotations

import os
from typing import Optional

import typer
import uvicorn

app = typer.Typer(help="Run the sitesnap FastAPI app with uvicorn.", add_completion=False)


def _env_str(key: str, default: str) -> str:
    return os.getenv(key, default)


def _env_int(key: str, default: int) -> int:
    raw = os.getenv(key, str(default))
    try:
        return int(raw)
    except ValueError as exc:
        raise typer.BadParameter(f"{key} must be an integer") from exc


def _env_bool(key: str, default: bool) -> bool:
    raw = os.getenv(key)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@app.callback(invoke_without_command=True)
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind host."),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port."),
    app_path: Optional[str] = typer.Option(
        None, "--app", help="ASGI import path (default sitesnap.main:app)."
    ),
    reload: Optional[bool] = typer.Option(None, "--reload/--no-reload", help="Enable auto-reload."),
    workers: Optional[int] = typer.Option(None, "--workers", help="Worker processes."),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Log level."),
) -> None:
    """Launch the FastAPI app.

    Every worker process owns its own render session pool, so the effective
    page ceiling is ``workers * MAX_CONCURRENT_PAGES``.
    """

    host = host or _env_str("HOST", "127.0.0.1")
    port = port or _env_int("PORT", 3000)
    app_path = app_path or _env_str("APP_MODULE", "sitesnap.main:app")
    if reload is None:
        reload = _env_bool("SITESNAP_SERVER_RELOAD", False)
    workers = workers or _env_int("SITESNAP_SERVER_WORKERS", 1)
    log_level = (log_level or _env_str("SITESNAP_SERVER_LOG_LEVEL", "info")).lower()

    uvicorn.run(
        app_path,
        host=host,
        port=port,
        reload=reload,
        workers=max(1, workers),
        log_level=log_level,
    )


def main() -> None:
    app()


if __name__ == "__main__":
    main()
