"""
imgd upload token management.

Creates, lists and revokes records in the token file read by the service at
startup. The running service only picks up changes after a restart.

Usage:
    python -m tools.tokens create --name ci --days 90 --rate-limit 30
    python -m tools.tokens create --name backup --never-expire
    python -m tools.tokens list
    python -m tools.tokens revoke --name ci

Tokens file resolution: --tokens-file, then $TOKENS_FILE, then
/opt/imgd/conf/tokens.json.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import click

from imgd.core.security import (
    TokenEntry,
    load_token_file,
    parse_expires_at,
    save_token_file,
    token_fingerprint,
)

DEFAULT_TOKENS_FILE = Path("/opt/imgd/conf/tokens.json")
TOKEN_BYTES = 24
RESTART_HINT = "restart imgd service to apply: sudo systemctl restart imgd"

tokens_file_option = click.option(
    "--tokens-file",
    "tokens_file",
    type=click.Path(dir_okay=False, path_type=Path),
    envvar="TOKENS_FILE",
    default=DEFAULT_TOKENS_FILE,
    show_default=True,
    help="Token record file",
)


def generate_token() -> str:
    return secrets.token_hex(TOKEN_BYTES)


def _validate_expires_at(ctx: click.Context, param: click.Parameter, value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    try:
        parse_expires_at(value)
    except ValueError:
        raise click.BadParameter(f"not an RFC 3339 timestamp: {value!r}") from None
    return value


@click.group()
def cli() -> None:
    """imgd upload token commands."""


@cli.command()
@click.option("--name", default="default", show_default=True, help="Label for the token")
@click.option(
    "--expires-at",
    callback=_validate_expires_at,
    default=None,
    help="Absolute expiry, RFC 3339 (e.g. 2027-01-01T00:00:00Z)",
)
@click.option("--days", type=click.IntRange(min=1), default=None, help="Expire N days from now")
@click.option("--never-expire", is_flag=True, default=False, help="No expiry")
@click.option(
    "--rate-limit",
    type=click.IntRange(min=0),
    default=None,
    help="Per-minute upload limit for this token (default: global limit only)",
)
@tokens_file_option
def create(
    name: str,
    expires_at: Optional[str],
    days: Optional[int],
    never_expire: bool,
    rate_limit: Optional[int],
    tokens_file: Path,
) -> None:
    """Generate a new token and append it to the token file."""
    if never_expire:
        expires_at = None
    elif days is not None:
        expires_at = (datetime.now(timezone.utc) + timedelta(days=days)).isoformat()

    token = generate_token()
    file = load_token_file(tokens_file)
    file.tokens.append(
        TokenEntry(
            name=name,
            token=token,
            expires_at=expires_at,
            rate_limit_per_minute=rate_limit,
        )
    )
    save_token_file(tokens_file, file)

    click.echo("token created")
    click.echo(f"name: {name}")
    click.echo(f"token: {token}")
    click.echo(f"expires_at: {expires_at or 'never'}")
    click.echo(f"rate_limit_per_minute: {rate_limit if rate_limit is not None else 'inherit-global'}")
    click.echo(f"tokens_file: {tokens_file}")
    click.echo(RESTART_HINT)


@cli.command(name="list")
@tokens_file_option
def list_tokens(tokens_file: Path) -> None:
    """List token records. Raw tokens are never printed."""
    file = load_token_file(tokens_file)

    click.echo(f"tokens_file: {tokens_file}")
    for entry in file.tokens:
        limit = entry.rate_limit_per_minute
        click.echo(
            f"name={entry.name} "
            f"expires_at={entry.expires_at or 'never'} "
            f"rate_limit_per_minute={limit if limit is not None else 'inherit-global'} "
            f"token_id={token_fingerprint(entry.token)}"
        )


@cli.command()
@click.option("--name", "by_name", default=None, help="Remove every token with this name")
@click.option("--token", "by_token", default=None, help="Remove this exact token")
@tokens_file_option
def revoke(by_name: Optional[str], by_token: Optional[str], tokens_file: Path) -> None:
    """Remove tokens by name or by value."""
    if by_name is None and by_token is None:
        raise click.UsageError("revoke requires --name or --token")

    file = load_token_file(tokens_file)
    before = len(file.tokens)
    file.tokens = [
        entry
        for entry in file.tokens
        if not (
            (by_name is not None and entry.name == by_name)
            or (by_token is not None and entry.token == by_token)
        )
    ]
    save_token_file(tokens_file, file)

    click.echo(f"removed {before - len(file.tokens)} token(s)")
    click.echo(RESTART_HINT)


if __name__ == "__main__":
    cli()
