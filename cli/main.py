"""HookRelay CLI — run the relay, sign/verify challenges, inspect secrets."""

import asyncio
import os

import typer
import uvicorn
from rich.console import Console
from rich.table import Table

from hookrelay.app.config import Settings, settings
from hookrelay.app.errors import CryptoError
from hookrelay.app.services import signer
from hookrelay.app.services.activity_log import mask_secret

app = typer.Typer(
    help="HookRelay - webhook to WebSocket relay",
    no_args_is_help=True,
)

console = Console()


@app.command()
def start(
    host: str = typer.Option(settings.host, "--host", help="Bind address"),
    port: int = typer.Option(settings.port, "--port", "-p", help="HTTP/WebSocket port"),
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes (development)"),
    heartbeat: bool = typer.Option(
        settings.enable_heartbeat,
        "--heartbeat/--no-heartbeat",
        help="Probe WebSocket subscribers for liveness",
    ),
    manual: bool = typer.Option(
        settings.require_manual_key_management,
        "--manual/--auto",
        help="Only accept secrets added by an administrator",
    ),
) -> None:
    """Start the relay server."""
    # Exported for the reload subprocess, which builds its own Settings
    os.environ["HOOKRELAY_ENABLE_HEARTBEAT"] = str(heartbeat).lower()
    os.environ["HOOKRELAY_REQUIRE_MANUAL_KEY_MANAGEMENT"] = str(manual).lower()
    os.environ["HOOKRELAY_PORT"] = str(port)

    display_host = "localhost" if host in ("0.0.0.0", "::") else host

    typer.echo("")
    typer.secho("HookRelay is starting up", fg=typer.colors.GREEN, bold=True)
    typer.echo(f"  Webhook:   http://{display_host}:{port}/api/webhook?secret=YOUR_SECRET")
    typer.echo(f"  WebSocket: ws://{display_host}:{port}/ws/YOUR_SECRET")
    typer.echo(f"  API docs:  http://{display_host}:{port}/docs")
    typer.echo(f"  Signature validation: {'on' if settings.enable_signature_validation else 'off'}")
    typer.echo(f"  Key management:       {'manual' if manual else 'auto'}")
    typer.echo(f"  Heartbeat:            {'on' if heartbeat else 'off'}")
    typer.echo("")

    try:
        if reload:
            # The reloader imports the app by path in a subprocess; it reads
            # the flags from the environment set above
            uvicorn.run("hookrelay.app.main:app", host=host, port=port, reload=True, log_level="info")
        else:
            from hookrelay.app.main import create_app

            config = Settings(
                host=host,
                port=port,
                enable_heartbeat=heartbeat,
                require_manual_key_management=manual,
            )
            uvicorn.run(create_app(config), host=host, port=port, log_level="info")
    except KeyboardInterrupt:
        pass
    finally:
        typer.secho("HookRelay stopped.", fg=typer.colors.GREEN)


@app.command()
def sign(
    secret: str = typer.Argument(..., help="Tenant secret"),
    event_ts: str = typer.Argument(..., help="Challenge event_ts"),
    plain_token: str = typer.Argument(..., help="Challenge plain_token"),
) -> None:
    """Compute the signature the relay answers a handshake with."""
    try:
        result = signer.sign(secret, event_ts, plain_token)
    except CryptoError as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc
    typer.echo(result.signature)


@app.command()
def verify(
    secret: str = typer.Argument(..., help="Tenant secret"),
    event_ts: str = typer.Argument(..., help="Challenge event_ts"),
    plain_token: str = typer.Argument(..., help="Challenge plain_token"),
    signature: str = typer.Argument(..., help="Hex signature to check"),
) -> None:
    """Check a signature; exits non-zero when it does not match."""
    if signer.verify(secret, event_ts, plain_token, signature):
        typer.secho("valid", fg=typer.colors.GREEN)
        return
    typer.secho("invalid", fg=typer.colors.RED)
    raise typer.Exit(code=1)


async def _load_secrets(config: Settings) -> tuple[list, dict]:
    from hookrelay.app.container import RelayServices

    services = RelayServices.build(config)
    try:
        await services.startup()
        return await services.registry.list_all(), await services.registry.stats()
    finally:
        await services.shutdown()


@app.command()
def secrets(
    show: bool = typer.Option(False, "--show", help="Print full secrets instead of a prefix"),
) -> None:
    """List registered secrets from the relay database."""
    records, stats = asyncio.run(_load_secrets(Settings(enable_heartbeat=False)))

    table = Table(title=f"Secrets ({stats['enabled']} enabled / {stats['disabled']} disabled)")
    table.add_column("Secret")
    table.add_column("Enabled")
    table.add_column("Max conn.")
    table.add_column("Created")
    table.add_column("Last used")
    table.add_column("Description")

    for r in records:
        table.add_row(
            r.id if show else mask_secret(r.id),
            "[green]yes[/green]" if r.enabled else f"[red]no[/red] {r.disabled_reason or ''}",
            str(r.max_connections or "default"),
            r.created_at[:19],
            (r.last_used_at or "never")[:19],
            r.description or "",
        )

    console.print(table)


if __name__ == "__main__":
    app()
