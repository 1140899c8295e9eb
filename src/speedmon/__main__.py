"""
speedmon CLI: serve the live measurement API, run a measurement against a
running server, and inspect the time-window and provider-identity rules,
with optional verbose logging and timestamped logfile output.
"""

import json
import logging
import sys
import typing
from datetime import datetime

import click
import requests
import uvicorn

from .client import PreflightValidator, StreamConsumer
from .config import Settings
from .detection import IdentityDetector, client_detector
from .identity import resolver_from_settings
from .offices import JsonOfficeDirectory
from .timewindow import WINDOW_LABELS, TimeSlot, current_slot

STAGE_COLORS = {
    "connecting": "cyan",
    "ping": "cyan",
    "download": "green",
    "upload": "blue",
}


@click.group()
@click.option(
    "--verbose-logging",
    is_flag=True,
    help="Also emit debug logs to stderr",
)
@click.option(
    "--log-file-path",
    type=click.Path(dir_okay=False, writable=True),
    help="Append timestamped logs to this file",
)
def main(verbose_logging: bool, log_file_path: typing.Optional[str]):
    """speedmon: live bandwidth measurement with provider attribution."""
    handlers: list[logging.Handler] = []
    if log_file_path:
        handlers.append(logging.FileHandler(log_file_path, mode="a", encoding="utf-8"))
    if verbose_logging:
        handlers.append(logging.StreamHandler(sys.stderr))
    if handlers:
        logging.basicConfig(
            level=logging.DEBUG if verbose_logging else logging.INFO,
            format="%(asctime)s %(levelname)s %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
            handlers=handlers,
        )


@main.command(name="serve")
@click.option("--host", default="127.0.0.1", show_default=True, help="interface to bind")
@click.option("--port", default=8000, show_default=True, type=int, help="port to bind")
def serve(host: str, port: int):
    """
    Run the HTTP API. Configuration is read from SPEEDMON_* environment variables.
    """
    settings = Settings.from_env()
    logging.info(f"Serving on {host}:{port} with tool {' '.join(settings.tool_command)!r}")
    uvicorn.run("speedmon.server:app_from_env", factory=True, host=host, port=port)


def _render(state) -> None:
    if state.status in STAGE_COLORS:
        line = (
            f"{state.status:10} {state.progress:6.1f}%  "
            f"down {state.download:8.2f} Mbps  up {state.upload:8.2f} Mbps  ping {state.ping:7.2f} ms"
        )
        click.echo(click.style(line, fg=STAGE_COLORS[state.status]))


@main.command(name="measure")
@click.option("-u", "--server-url", default="http://127.0.0.1:8000", show_default=True, help="speedmon server root URL")
@click.option("-o", "--office-id", required=True, help="target office identifier")
@click.option("-i", "--isp", "claimed", default=None, help="claimed provider id or name")
@click.option("-s", "--section", default=None, help="grouping label for the result")
@click.option("--validated", is_flag=True, help="the claimed provider was already validated; skip pre-flight")
@click.option("--timezone", "tz", default="UTC", show_default=True, help="local IANA time zone")
@click.option("--role", default="USER", show_default=True, help="caller role sent to the server")
@click.option(
    "--offices-file",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="office JSON file, used to suggest a configured provider on mismatch",
)
def measure(
    server_url: str,
    office_id: str,
    claimed: typing.Optional[str],
    section: typing.Optional[str],
    validated: bool,
    tz: str,
    role: str,
    offices_file: typing.Optional[str],
):
    """
    Run one live measurement against a speedmon server and print its progress.
    """
    session = requests.Session()
    session.headers.update({"X-User-Role": role, "X-User-Office": office_id})
    settings = Settings.from_env()
    resolver = resolver_from_settings(settings)

    configured: list[str] = []
    if offices_file:
        office = JsonOfficeDirectory(offices_file).get(office_id)
        if office is not None:
            configured = office.configured_names()

    consumer = StreamConsumer(
        server_url,
        session=session,
        preflight=PreflightValidator(
            server_url,
            session=session,
            resolver=resolver,
            local_detector=client_detector(settings),
        ),
        timeout=settings.timeout + 30,
    )

    while True:
        state = consumer.run(
            office_id,
            claimed_identity=claimed,
            section=section,
            identity_validated=validated,
            timezone=tz,
            configured=configured,
            on_update=_render,
        )
        suggestion = (state.error_payload or {}).get("suggestedIdentity")
        if state.status == "errored" and suggestion and suggestion != claimed:
            click.echo(click.style(state.error or "", fg="yellow"), err=True)
            if click.confirm(f"Run the test as {suggestion!r} instead?", default=True):
                claimed = suggestion
                continue
        break

    if state.status == "complete":
        result = state.result or {}
        click.echo(click.style("Speed test complete", fg="green", bold=True))
        click.echo(f"  Download : {state.download:.2f} Mbps")
        click.echo(f"  Upload   : {state.upload:.2f} Mbps")
        click.echo(f"  Ping     : {state.ping:.2f} ms")
        click.echo(f"  ISP      : {result.get('ispName', 'Unknown ISP')}")
        if result.get("resultUrl"):
            click.echo(f"  Result   : {result['resultUrl']}")
        return

    click.echo(click.style(f"❌  {state.error or state.status}", fg="red"), err=True)
    sys.exit(1)


@main.command(name="window")
@click.option("--timezone", "tz", default=None, help="IANA time zone (default: SPEEDMON_APP_TIMEZONE)")
@click.option("--at", "at", default=None, help="ISO 8601 instant to evaluate instead of now")
def window(tz: typing.Optional[str], at: typing.Optional[str]):
    """
    Show which testing window is active.
    """
    settings = Settings.from_env()
    now = datetime.fromisoformat(at) if at else None
    slot = current_slot(tz or settings.app_timezone, now=now, server_timezone=settings.app_timezone)
    if slot is None:
        click.echo(click.style("Outside testing windows", fg="yellow"))
    else:
        click.echo(click.style(f"{slot.value} ({slot.label})", fg="green"))
    for s in TimeSlot:
        click.echo(f"  {s.value:10} {WINDOW_LABELS[s]}")


@main.command(name="canonicalize")
@click.argument("names", nargs=-1, required=True)
def canonicalize(names: tuple[str, ...]):
    """
    Print the canonical provider identity of each NAME.
    """
    resolver = resolver_from_settings(Settings.from_env())
    for name in names:
        click.echo(f"{name} -> {resolver.canonicalize(name)}")


@main.command(name="validate")
@click.argument("claimed")
@click.argument("detected")
@click.option("--relaxed", is_flag=True, help="informational mode: always allows proceeding")
def validate(claimed: str, detected: str, relaxed: bool):
    """
    Compare a CLAIMED provider with a DETECTED one and print the resolution.
    Exits with status 1 when the measurement would be blocked.
    """
    resolver = resolver_from_settings(Settings.from_env())
    resolution = resolver.validate(claimed, detected, relaxed=relaxed)
    click.echo(json.dumps(resolution.to_payload(), indent=2))
    if not resolution.allow_proceed:
        sys.exit(1)


@main.command(name="detect")
@click.option("--ip", "client_ip", default=None, help="address to look up (default: this host)")
def detect(client_ip: typing.Optional[str]):
    """
    Look up the provider owning an address using the configured services.
    """
    settings = Settings.from_env()
    detected = IdentityDetector(settings).detect(client_ip)
    canonical = resolver_from_settings(settings).canonicalize(detected)
    click.echo(f"Detected: {detected}")
    click.echo(f"Canonical: {canonical}")


if __name__ == "__main__":
    main()
