#!/usr/bin/env python3
"""sitesnap CLI for interacting with the screenshot API."""

from __future__ import annotations

import json
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional

import httpx
import typer
from decouple import Config as DecoupleConfig, RepositoryEnv
from rich.console import Console
from rich.table import Table

console = Console()
cli = typer.Typer(help="Interact with the sitesnap screenshot API")
site_cli = typer.Typer(help="Sitemap-driven site crawls.")
cli.add_typer(site_cli, name="site")

_TERMINAL_SITE_STATES = {"completed", "failed"}


@dataclass
class APISettings:
    base_url: str
    api_key: Optional[str]


def _load_env_settings() -> APISettings:
    env_path = Path(".env")
    if env_path.exists():
        config = DecoupleConfig(RepositoryEnv(str(env_path)))
        base_url = config("API_BASE_URL", default="http://localhost:3000")
        api_key = config("SITESNAP_API_KEY", default=None)
        return APISettings(base_url=base_url, api_key=api_key)
    return APISettings(base_url="http://localhost:3000", api_key=None)


def _resolve_settings(override_base: Optional[str]) -> APISettings:
    settings = _load_env_settings()
    if override_base:
        settings.base_url = override_base
    return settings


def _auth_headers(settings: APISettings) -> dict[str, str]:
    headers: dict[str, str] = {}
    if settings.api_key:
        headers["X-API-Key"] = settings.api_key
    return headers


def _client(settings: APISettings, *, timeout: float = 120.0) -> httpx.Client:
    return httpx.Client(
        base_url=settings.base_url,
        timeout=httpx.Timeout(timeout, connect=10.0),
        headers=_auth_headers(settings),
    )


@contextmanager
def _client_ctx(settings: APISettings, *, timeout: float = 120.0) -> Iterator[httpx.Client]:
    client = _client(settings, timeout=timeout)
    try:
        yield client
    finally:
        client.close()


def _fail(response: httpx.Response) -> None:
    try:
        body = response.json()
    except ValueError:
        body = {"message": response.text}
    message = body.get("message") or body.get("detail") or response.reason_phrase
    console.print(f"[red]{response.status_code}[/] {message}")
    if response.status_code == 429 and response.headers.get("Retry-After"):
        console.print(f"[dim]Retry after {response.headers['Retry-After']}s[/]")
    raise typer.Exit(1)


def _request(settings: APISettings, method: str, path: str, **kwargs: Any) -> httpx.Response:
    with _client_ctx(settings) as client:
        response = client.request(method, path, **kwargs)
    if response.status_code >= 400:
        _fail(response)
    return response


def _print_artifacts(records: Iterable[dict[str, Any]], *, title: str) -> None:
    rows = list(records)
    if not rows:
        console.print("[dim]No screenshots found.[/]")
        return
    table = Table("ID", "URL", "Viewport", "Size", "Status", "Expires", title=title)
    for row in rows:
        table.add_row(
            str(row.get("id")),
            str(row.get("url")),
            str(row.get("viewport")),
            f"{row.get('size_bytes', 0):,}",
            str(row.get("status")),
            str(row.get("expires_at", "-")),
        )
    console.print(table)


def _print_site(site: dict[str, Any]) -> None:
    table = Table("Field", "Value", title=f"Site crawl {site.get('id', 'unknown')}")
    for key in ("root_url", "sitemap_url", "status", "total_pages", "captured_count", "failed_count", "unique_paths"):
        table.add_row(key, str(site.get(key)))
    console.print(table)
    pages = site.get("pages") or {}
    if pages:
        page_table = Table("Path", "Artifact", "Size", title="Pages")
        for path, page in sorted(pages.items()):
            page_table.add_row(path, str(page.get("id")), f"{page.get('size_bytes', 0):,}")
        console.print(page_table)


@cli.command()
def capture(
    urls: list[str] = typer.Argument(..., help="One to ten URLs to capture"),
    api_base: Optional[str] = typer.Option(None, help="Override API base URL"),
    viewport: str = typer.Option("desktop", "--viewport", help="desktop or mobile"),
    full_page: bool = typer.Option(True, "--full-page/--viewport-only"),
    wait_ms: int = typer.Option(2000, "--wait-ms", help="Extra wait before the snapshot"),
    client_name: Optional[str] = typer.Option(None, "--client"),
    project_name: Optional[str] = typer.Option(None, "--project"),
    tag: Optional[list[str]] = typer.Option(None, "--tag", help="Tag to attach (repeatable)"),
    json_output: bool = typer.Option(False, "--json", help="Print the raw response"),
) -> None:
    """Capture one or more pages and print the stored artifacts."""

    settings = _resolve_settings(api_base)
    payload = {
        "urls": urls,
        "viewport": viewport,
        "full_page": full_page,
        "wait_time_ms": wait_ms,
        "client_name": client_name,
        "project_name": project_name,
        "tags": tag or [],
    }
    body = _request(settings, "POST", "/screenshot", json=payload).json()
    if json_output:
        console.print_json(data=body)
        return
    _print_artifacts(body.get("screenshots", []), title="Captured")
    for failure in body.get("failed", []):
        console.print(f"[red]failed[/] {failure.get('url')}: {failure.get('error')}")
    if not body.get("success"):
        raise typer.Exit(1)


@cli.command()
def show(
    artifact_id: str = typer.Argument(..., help="Screenshot identifier"),
    api_base: Optional[str] = typer.Option(None, help="Override API base URL"),
) -> None:
    """Display metadata for one stored screenshot."""

    settings = _resolve_settings(api_base)
    record = _request(settings, "GET", f"/screenshot/{artifact_id}").json()
    table = Table("Field", "Value", title=f"Screenshot {artifact_id}")
    for key, value in record.items():
        if isinstance(value, (dict, list)):
            value = json.dumps(value)
        table.add_row(key, str(value))
    console.print(table)


@cli.command()
def download(
    artifact_id: str = typer.Argument(..., help="Screenshot identifier"),
    out: Optional[Path] = typer.Option(None, "--out", "-o", help="Destination file"),
    api_base: Optional[str] = typer.Option(None, help="Override API base URL"),
) -> None:
    """Download the PNG bytes for a screenshot."""

    settings = _resolve_settings(api_base)
    response = _request(settings, "GET", f"/screenshot/{artifact_id}/download")
    target = out or Path(f"{artifact_id}.png")
    target.write_bytes(response.content)
    console.print(f"[green]Saved[/] {target} ({len(response.content):,} bytes)")


@cli.command("list")
def list_screenshots(
    api_base: Optional[str] = typer.Option(None, help="Override API base URL"),
    client_name: Optional[str] = typer.Option(None, "--client"),
    project_name: Optional[str] = typer.Option(None, "--project"),
    site_job_id: Optional[str] = typer.Option(None, "--site-job"),
    include_expired: bool = typer.Option(False, "--include-expired"),
    limit: int = typer.Option(50, "--limit"),
    offset: int = typer.Option(0, "--offset"),
) -> None:
    """List stored screenshots, newest first."""

    settings = _resolve_settings(api_base)
    params: dict[str, Any] = {"limit": limit, "offset": offset, "include_expired": include_expired}
    if client_name:
        params["client_name"] = client_name
    if project_name:
        params["project_name"] = project_name
    if site_job_id:
        params["site_job_id"] = site_job_id
    body = _request(settings, "GET", "/screenshots", params=params).json()
    _print_artifacts(body.get("screenshots", []), title=f"Screenshots ({body.get('total', 0)} total)")


@cli.command()
def delete(
    artifact_id: str = typer.Argument(..., help="Screenshot identifier"),
    immediate: bool = typer.Option(False, "--immediate", help="Delete now instead of at the next sweep"),
    api_base: Optional[str] = typer.Option(None, help="Override API base URL"),
) -> None:
    """Delete a screenshot."""

    settings = _resolve_settings(api_base)
    _request(settings, "DELETE", f"/screenshot/{artifact_id}", params={"immediate": immediate})
    suffix = "deleted" if immediate else "marked for deletion"
    console.print(f"[green]{artifact_id}[/] {suffix}")


@cli.command()
def health(api_base: Optional[str] = typer.Option(None, help="Override API base URL")) -> None:
    """Print the aggregate health report."""

    settings = _resolve_settings(api_base)
    with _client_ctx(settings, timeout=10.0) as client:
        response = client.get("/health")
    body = response.json()
    table = Table("Service", "Status", title=f"Health: {body.get('status')}")
    for name, state in (body.get("services") or {}).items():
        colour = "green" if state == "healthy" else "red"
        table.add_row(name, f"[{colour}]{state}[/]")
    console.print(table)
    pool = body.get("pool") or {}
    if pool:
        console.print(
            f"[dim]pool[/]: {pool.get('active_sessions')}/{pool.get('ceiling')} active, "
            f"{pool.get('queue_length')} queued"
        )
    if response.status_code >= 500:
        raise typer.Exit(1)


@site_cli.command("start")
def site_start(
    url: str = typer.Argument(..., help="Site root used for sitemap discovery"),
    api_base: Optional[str] = typer.Option(None, help="Override API base URL"),
    sitemap_url: Optional[str] = typer.Option(None, "--sitemap", help="Sitemap to try first"),
    viewport: str = typer.Option("desktop", "--viewport"),
    full_page: bool = typer.Option(True, "--full-page/--viewport-only"),
    wait_ms: int = typer.Option(2000, "--wait-ms"),
    max_pages: Optional[int] = typer.Option(None, "--max-pages", help="Defaults to the server's SITE_DEFAULT_MAX_PAGES"),
    client_name: Optional[str] = typer.Option(None, "--client"),
    project_name: Optional[str] = typer.Option(None, "--project"),
    watch: bool = typer.Option(False, "--watch/--no-watch", help="Poll until the crawl finishes"),
    interval: float = typer.Option(2.0, "--interval", help="Seconds between polls when watching"),
) -> None:
    """Start a sitemap-driven crawl."""

    settings = _resolve_settings(api_base)
    payload = {
        "url": url,
        "sitemap_url": sitemap_url,
        "viewport": viewport,
        "full_page": full_page,
        "wait_time_ms": wait_ms,
        "max_pages": max_pages,
        "client_name": client_name,
        "project_name": project_name,
    }
    ack = _request(settings, "POST", "/site", json=payload).json()
    console.print(f"[green]Site crawl {ack['job_id']}[/]: {ack['total_pages']} pages from {ack['sitemap_url']}")
    for error in ack.get("sitemap_errors", []):
        console.print(f"[yellow]sitemap[/] {error}")
    if watch:
        _watch_site(settings, ack["job_id"], interval)


@site_cli.command("status")
def site_status(
    job_id: str = typer.Argument(..., help="Site crawl identifier"),
    api_base: Optional[str] = typer.Option(None, help="Override API base URL"),
    watch: bool = typer.Option(False, "--watch/--no-watch"),
    interval: float = typer.Option(2.0, "--interval"),
) -> None:
    """Show progress for a site crawl."""

    settings = _resolve_settings(api_base)
    if watch:
        _watch_site(settings, job_id, interval)
        return
    _print_site(_request(settings, "GET", f"/site/{job_id}").json())


@site_cli.command("list")
def site_list(
    api_base: Optional[str] = typer.Option(None, help="Override API base URL"),
    status: Optional[str] = typer.Option(None, "--status"),
    client_name: Optional[str] = typer.Option(None, "--client"),
    limit: int = typer.Option(50, "--limit"),
) -> None:
    """List recent site crawls."""

    settings = _resolve_settings(api_base)
    params: dict[str, Any] = {"limit": limit}
    if status:
        params["status"] = status
    if client_name:
        params["client_name"] = client_name
    body = _request(settings, "GET", "/sites", params=params).json()
    sites = body.get("sites", [])
    if not sites:
        console.print("[dim]No site crawls found.[/]")
        return
    table = Table("ID", "Root", "Status", "Captured", "Failed", "Total", title="Site crawls")
    for site in sites:
        table.add_row(
            str(site.get("id")),
            str(site.get("root_url")),
            str(site.get("status")),
            str(site.get("captured_count")),
            str(site.get("failed_count")),
            str(site.get("total_pages")),
        )
    console.print(table)


def _watch_site(settings: APISettings, job_id: str, interval: float) -> None:
    while True:
        site = _request(settings, "GET", f"/site/{job_id}").json()
        done = site.get("captured_count", 0) + site.get("failed_count", 0)
        console.print(f"[dim]{site.get('status')}[/] {done}/{site.get('total_pages')} pages")
        if site.get("status") in _TERMINAL_SITE_STATES:
            _print_site(site)
            if site.get("status") == "failed":
                raise typer.Exit(1)
            return
        time.sleep(max(0.1, interval))


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
