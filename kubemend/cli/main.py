"""KubeMend command-line interface.

Commands:
    kubemend run                     Start the controller in the foreground.
    kubemend status [--json]         List policies known to a running controller.
    kubemend parse-pod-name NAME     Show the CronJob the name heuristic derives.
    kubemend version                 Print version and exit.

``status`` calls the REST API at http://localhost:8080 (configurable via
``--api-url``).  Output is colourised for readability.
"""

from __future__ import annotations

import asyncio
import json

import click
import httpx

from kubemend import __version__

_DEFAULT_API_URL = "http://localhost:8080"

_MODE_COLORS: dict[str, str] = {
    "manual": "cyan",
    "automatic": "magenta",
}


def _styled_validity(valid: bool) -> str:
    return click.style("valid", fg="green") if valid else click.style("invalid", fg="red", bold=True)


# ---------------------------------------------------------------------------
# HTTP helpers
# ---------------------------------------------------------------------------


def _get(api_url: str, path: str) -> dict[str, object]:
    """Perform a GET request and return the parsed JSON body.

    Raises click.ClickException on connection errors or non-2xx responses.
    """
    url = api_url.rstrip("/") + path
    try:
        with httpx.Client(timeout=30.0) as client:
            response = client.get(url)
        response.raise_for_status()
        return response.json()  # type: ignore[no-any-return]
    except httpx.ConnectError as err:
        raise click.ClickException(f"Cannot connect to KubeMend API at {api_url}. Is the controller running?") from err
    except httpx.HTTPStatusError as exc:
        _handle_error_response(exc.response)
        raise  # unreachable, _handle_error_response always raises


def _handle_error_response(response: httpx.Response) -> None:
    """Parse an error response body and raise a friendly ClickException."""
    try:
        data: dict[str, object] = response.json()
        msg = f"{data.get('error', 'ERROR')}: {data.get('detail', 'Unknown error')}"
    except ValueError:
        msg = f"HTTP {response.status_code}: {response.text[:200]}"
    raise click.ClickException(msg)


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.option(
    "--api-url",
    default=_DEFAULT_API_URL,
    envvar="KUBEMEND_API_URL",
    show_default=True,
    help="KubeMend REST API base URL.",
)
@click.pass_context
def cli(ctx: click.Context, api_url: str) -> None:
    """KubeMend: event-driven Kubernetes remediation."""
    ctx.ensure_object(dict)
    ctx.obj["api_url"] = api_url


@cli.command("version")
def cmd_version() -> None:
    """Print the KubeMend version and exit."""
    click.echo(f"kubemend {__version__}")


@cli.command("run")
def cmd_run() -> None:
    """Run the controller until SIGTERM/SIGINT."""
    from kubemend.app import main

    asyncio.run(main())


# ---------------------------------------------------------------------------
# kubemend status
# ---------------------------------------------------------------------------


@cli.command("status")
@click.option(
    "--json",
    "output_json",
    is_flag=True,
    default=False,
    help="Print raw JSON response.",
)
@click.pass_context
def cmd_status(ctx: click.Context, output_json: bool) -> None:
    """Show the remediation policies a running controller is tracking."""
    api_url: str = ctx.obj["api_url"]
    data = _get(api_url, "/api/v1/policies")

    if output_json:
        click.echo(json.dumps(data, indent=2))
        return

    _print_policies(data)


def _print_policies(data: dict[str, object]) -> None:
    policies: list[dict[str, object]] = data.get("policies", [])  # type: ignore[assignment]
    click.echo(click.style(f"Remediation Policies ({len(policies)})", bold=True))
    click.echo("")
    if not policies:
        click.echo(click.style("No policies found.", fg="yellow"))
        return

    for p in policies:
        mode = str(p.get("mode", "?"))
        limits: dict[str, object] = p.get("rate_limiting", {})  # type: ignore[assignment]
        click.echo(
            f"  {p.get('namespace', '?')}/{p.get('name', '?')}  "
            f"[{_styled_validity(bool(p.get('valid')))}]  "
            f"mode={click.style(mode, fg=_MODE_COLORS.get(mode, 'white'))}  "
            f"selectors={p.get('selectors', 0)}  "
            f"rate={limits.get('events_per_minute', '?')}/min  "
            f"cooldown={limits.get('cooldown_minutes', '?')}m"
        )
        problems: list[object] = p.get("problems", [])  # type: ignore[assignment]
        for problem in problems:
            click.echo(click.style(f"      - {problem}", fg="red"))


# ---------------------------------------------------------------------------
# kubemend parse-pod-name
# ---------------------------------------------------------------------------


@cli.command("parse-pod-name")
@click.argument("pod_name")
def cmd_parse_pod_name(pod_name: str) -> None:
    """Show the CronJob name derived from POD_NAME when the Pod is gone."""
    from kubemend.remediation.owner import parse_cronjob_name_from_pod_name

    cronjob = parse_cronjob_name_from_pod_name(pod_name)
    if cronjob is None:
        click.echo(f"pod:{pod_name}  " + click.style("(no CronJob pattern)", fg="yellow"))
        return
    click.echo(f"cronjob:{cronjob}")


if __name__ == "__main__":
    cli()
