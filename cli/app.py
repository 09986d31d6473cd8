from __future__ import annotations

from dataclasses import asdict
from pathlib import Path
from typing import Optional

import typer

from ntptrap.dispatcher import NotificationError, TelegramNotifier
from ntptrap.geoip import DEFAULT_ENDPOINT, GeoIPClient, GeoIPError
from ntptrap.lifecycle import run as run_service
from ntptrap.listener import ListenerError
from ntptrap.probe import probe as probe_host
from ntptrap.settings import ConfigurationError, Settings, load_settings

from .common import configure_logging, console, print_json, render_mapping

app = typer.Typer(help="ntptrap: UDP time-sync trap with Telegram alerts")

EXIT_CONFIG = 1
EXIT_BIND = 2

_CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Optional YAML configuration file")


@app.callback()
def main() -> None:
    """Answer NTP client probes and report each requester to the operator."""


def _load(config: Optional[Path]) -> Settings:
    try:
        return load_settings(config)
    except ConfigurationError as exc:
        console().print(f"[red]Configuration error:[/] {exc}")
        raise typer.Exit(code=EXIT_CONFIG) from exc


@app.command("serve")
def serve(config: Optional[Path] = _CONFIG_OPTION) -> None:
    """Bind the UDP port and run until SIGINT/SIGTERM."""
    settings = _load(config)
    logger = configure_logging(settings.log_level, settings.log_file)
    logger.info("Starting with configuration %s", settings.redacted())
    try:
        code = run_service(settings, logger=logger)
    except ListenerError as exc:
        logger.error("Cannot start NTP trap: %s", exc)
        raise typer.Exit(code=EXIT_BIND) from exc
    raise typer.Exit(code=code)


@app.command("probe")
def probe(
    host: str = typer.Argument(..., help="Host to query"),
    port: int = typer.Option(123, "--port", "-p"),
    timeout: float = typer.Option(2.0, "--timeout", "-t"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON instead of a table"),
) -> None:
    """Send one client request and show the decoded reply."""
    try:
        result = probe_host(host, port=port, timeout=timeout)
    except (OSError, ValueError) as exc:
        console().print(f"[red]Probe of {host}:{port} failed:[/] {exc}")
        raise typer.Exit(code=1) from exc
    payload = result.to_dict()
    if as_json:
        print_json(payload)
    else:
        render_mapping(f"NTP reply from {host}:{port}", payload)
    if not result.ok:
        raise typer.Exit(code=1)


@app.command("lookup")
def lookup(
    ip: str = typer.Argument(..., help="Address to enrich"),
    url: str = typer.Option(DEFAULT_ENDPOINT, "--url", help="Geolocation endpoint"),
    timeout: Optional[float] = typer.Option(None, "--timeout", "-t"),
) -> None:
    """Run the geolocation lookup used for alerts."""
    client = GeoIPClient(url, timeout=timeout)
    try:
        geo = client.lookup(ip)
    except GeoIPError as exc:
        console().print(f"[red]{exc}[/]")
        raise typer.Exit(code=1) from exc
    render_mapping(f"GeoIP {ip}", asdict(geo))


@app.command("notify")
def notify(
    text: str = typer.Argument(..., help="Message text"),
    config: Optional[Path] = _CONFIG_OPTION,
) -> None:
    """Send one message through the configured Telegram bot."""
    settings = _load(config)
    notifier = TelegramNotifier(
        settings.telegram_token,
        settings.telegram_chat_id,
        base_url=settings.telegram_api_url,
    )
    try:
        notifier.send(text)
    except NotificationError as exc:
        console().print(f"[red]{exc}[/]")
        raise typer.Exit(code=1) from exc
    console().print(f"[green]Sent to chat {settings.telegram_chat_id}[/]")


if __name__ == "__main__":  # pragma: no cover
    app()
