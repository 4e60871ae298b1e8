"""CLI entry point for Mirim OAuth."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, NoReturn

import click

from . import __version__
from .client import MirimOAuth
from .config import ConfigError, load_config
from .errors import ErrorKind, MirimOAuthError
from .output import OutputHandler
from .storage import EncryptedFileStorage
from .surface import BrowserSurface

# Logger for CLI
logger = logging.getLogger("mirim_oauth")

HELP_BY_KIND = {
    ErrorKind.NOT_AUTHENTICATED: "Run 'mirim-oauth login' to sign in.",
    ErrorKind.REFRESH_FAILED: "Your session could not be renewed. Run 'mirim-oauth login' again.",
    ErrorKind.TIMEOUT: "No response from the browser. Run 'mirim-oauth login' and finish signing in within the time limit.",
    ErrorKind.POPUP_BLOCKED: "Check that MIRIM_OAUTH_REDIRECT_URI points at 127.0.0.1 or localhost and that its port is free.",
    ErrorKind.STATE_MISMATCH: "The login response did not belong to this attempt. Try logging in again.",
    ErrorKind.STORAGE_CORRUPT: "Stored session data is unreadable. Run 'mirim-oauth logout' to reset it.",
}


@click.group()
@click.option("--json", "json_mode", is_flag=True, help="Output in JSON format")
@click.option("--env-file", "env_path", type=click.Path(exists=True), help="Path to .env file")
@click.option("--store-dir", type=click.Path(file_okay=False), help="Directory for the encrypted session store")
@click.option("--server-url", help="Authorization server base URL")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.version_option(version=__version__)
@click.pass_context
def main(
    ctx: click.Context,
    json_mode: bool,
    env_path: str | None,
    store_dir: str | None,
    server_url: str | None,
    verbose: bool,
) -> None:
    """Mirim OAuth - sign in to the Mirim authorization server from the terminal."""
    ctx.ensure_object(dict)
    ctx.obj["json_mode"] = json_mode
    ctx.obj["env_path"] = Path(env_path) if env_path else None
    ctx.obj["store_dir"] = Path(store_dir) if store_dir else None
    ctx.obj["server_url"] = server_url
    ctx.obj["output"] = OutputHandler(json_mode)

    # Configure logging based on verbosity
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)


def get_client(ctx: click.Context) -> MirimOAuth | NoReturn:
    """Build the client from context, handling configuration errors."""
    output: OutputHandler = ctx.obj["output"]
    try:
        config = load_config(ctx.obj["env_path"], server_url=ctx.obj["server_url"])
    except ConfigError as e:
        output.error(e, error_type="ConfigError")
        raise SystemExit(1)  # Never reached due to sys.exit in output.error

    return MirimOAuth(
        config,
        storage=EncryptedFileStorage(ctx.obj["store_dir"]),
        surface=BrowserSurface(config.redirect_uri, on_status=output.status),
    )


def run_with_client(ctx: click.Context, operation: Callable[[MirimOAuth], Awaitable[Any]]) -> Any:
    """Run an async operation against a fresh client, reporting classified errors."""
    output: OutputHandler = ctx.obj["output"]
    auth = get_client(ctx)

    async def runner() -> Any:
        async with auth:
            return await operation(auth)

    try:
        return asyncio.run(runner())
    except MirimOAuthError as e:
        output.error(e, help_text=HELP_BY_KIND.get(e.kind))
        raise SystemExit(1)


def _user_dict(auth: MirimOAuth) -> dict[str, Any] | None:
    user = auth.current_user
    return user.to_persisted() if user else None


def _session_dict(auth: MirimOAuth) -> dict[str, Any]:
    state = auth.state
    return {
        "logged_in": state.is_logged_in,
        "user": _user_dict(auth),
        "expires_at": state.tokens.expires_at.isoformat() if state.tokens else None,
    }


@main.command()
@click.pass_context
def login(ctx: click.Context) -> None:
    """Sign in through the browser."""
    output: OutputHandler = ctx.obj["output"]

    async def operation(auth: MirimOAuth) -> dict[str, Any]:
        await auth.login()
        return _session_dict(auth)

    session = run_with_client(ctx, operation)
    user = session["user"] or {}
    output.success(session, human_message=click.style(f"Logged in as {user.get('email') or user.get('id')}", fg="green"))


@main.command()
@click.pass_context
def logout(ctx: click.Context) -> None:
    """Forget the stored session."""
    output: OutputHandler = ctx.obj["output"]
    run_with_client(ctx, lambda auth: auth.logout())
    output.success({"message": "Logged out"}, human_message="Logged out.")


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show whether a valid session is stored (refreshing it if needed)."""
    output: OutputHandler = ctx.obj["output"]

    async def operation(auth: MirimOAuth) -> dict[str, Any]:
        await auth.check_logged_in()
        return _session_dict(auth)

    session = run_with_client(ctx, operation)

    if ctx.obj["json_mode"]:
        output.success(session)
        return

    if not session["logged_in"]:
        click.echo("Not logged in.")
        return

    user = session["user"] or {}
    click.secho("Logged in", fg="green", bold=True)
    click.echo(f"  User:    {user.get('email')} (id {user.get('id')})")
    click.echo(f"  Expires: {session['expires_at']}")


@main.command()
@click.pass_context
def whoami(ctx: click.Context) -> None:
    """Fetch the current user's profile from the server."""
    output: OutputHandler = ctx.obj["output"]

    async def operation(auth: MirimOAuth) -> dict[str, Any]:
        user = await auth.refresh_user_info()
        return user.to_persisted()

    output.success(run_with_client(ctx, operation))


@main.command()
@click.pass_context
def refresh(ctx: click.Context) -> None:
    """Refresh the stored tokens now."""
    output: OutputHandler = ctx.obj["output"]

    async def operation(auth: MirimOAuth) -> dict[str, Any]:
        await auth.check_logged_in()
        await auth.refresh_tokens()
        return _session_dict(auth)

    session = run_with_client(ctx, operation)
    output.success(session, human_message=f"Tokens refreshed; expire at {session['expires_at']}")


@main.command()
@click.argument("path")
@click.option(
    "--method",
    "-X",
    type=click.Choice(["GET", "POST", "PUT", "DELETE"], case_sensitive=False),
    default="GET",
    help="HTTP method",
)
@click.option("--data", "-d", help="JSON request body (POST/PUT only)")
@click.pass_context
def request(ctx: click.Context, path: str, method: str, data: str | None) -> None:
    """Call an API PATH on the server with the stored session."""
    output: OutputHandler = ctx.obj["output"]

    body = None
    if data:
        try:
            body = json.loads(data)
        except json.JSONDecodeError as e:
            output.error(e, error_type="InvalidJSON", help_text="--data must be valid JSON.")
            raise SystemExit(1)

    result = run_with_client(
        ctx,
        lambda auth: auth.make_authenticated_request(path, method=method.upper(), body=body),
    )
    output.success(result)


if __name__ == "__main__":
    main()
