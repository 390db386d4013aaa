"""
Command-line entry point for the Rauthy authenticator vault.
"""

import logging
import os
import time
from contextlib import contextmanager
from typing import Iterator, Optional

import click

from . import config
from . import vault_manager
from .exceptions import AuthenticationError, VaultError
from .icons import IconLookup
from .storage import Vault

logger = logging.getLogger(__name__)


def _read_password() -> str:
    password = os.environ.get(config.PASSWORD_ENV)
    if password is not None:
        return password
    return click.prompt("Vault password", hide_input=True)


@contextmanager
def _unlocked_vault(ctx: click.Context) -> Iterator[Vault]:
    """Unlock the vault for one command and always lock it afterwards."""
    data_dir = vault_manager.ensure_data_dir(ctx.obj['data_dir'])
    vault = Vault(data_dir, icon_lookup=ctx.obj['icon_lookup'])
    try:
        try:
            vault.unlock(_read_password())
        except AuthenticationError:
            raise click.ClickException("Could not unlock the vault: wrong password or corrupt file")
        if vault.migrated:
            click.echo("Vault upgraded to the salted file format.", err=True)
        yield vault
    except VaultError as e:
        raise click.ClickException(str(e))
    finally:
        vault.close()


@click.group()
@click.option('--data-dir', type=click.Path(file_okay=False), default=None,
              help=f"Directory holding {config.STORAGE_FILE} (default: ~/{config.CONFIG_DIR_NAME}).")
@click.option('-v', '--verbose', is_flag=True, help='Enable debug logging.')
@click.version_option(config.APP_VERSION, prog_name=config.APP_NAME)
@click.pass_context
def cli(ctx: click.Context, data_dir: Optional[str], verbose: bool):
    """Rauthy - TOTP codes from a local encrypted vault."""
    logging.basicConfig(level=logging.DEBUG if verbose else config.LOG_LEVEL, format=config.LOG_FORMAT)
    ctx.ensure_object(dict)
    ctx.obj['data_dir'] = data_dir or vault_manager.get_data_dir()
    ctx.obj.setdefault('icon_lookup', IconLookup())


@cli.command()
@click.pass_context
def codes(ctx: click.Context):
    """Show the current code of every credential."""
    with _unlocked_vault(ctx) as vault:
        now = time.time()
        batch = vault.services_tokens(now)
        credentials = vault.credentials()
        if not credentials:
            click.echo("Vault is empty.")
            return
        for credential_id in sorted(batch.tokens):
            token = batch.tokens[credential_id]
            remaining = int(token.next_step_time - now)
            click.echo(f"{token.token}  {remaining:>3}s  {credential_id}")
        for credential_id, error in sorted(batch.errors.items()):
            click.echo(f"{'-' * 6}  error {credential_id}: {error}", err=True)


@cli.command(name='list')
@click.pass_context
def list_credentials(ctx: click.Context):
    """List stored credentials."""
    with _unlocked_vault(ctx) as vault:
        credentials = vault.credentials()
        if not credentials:
            click.echo("Vault is empty.")
            return
        for credential_id in sorted(credentials):
            credential = credentials[credential_id]
            click.echo(
                f"{credential_id}\t{credential.issuer}\t{credential.name}\t"
                f"{credential.algorithm.value}/{credential.digits}/{credential.period}s"
            )


@cli.command()
@click.argument('uri')
@click.pass_context
def add(ctx: click.Context, uri: str):
    """Add (or replace) a credential from an otpauth:// URI."""
    with _unlocked_vault(ctx) as vault:
        credential = vault.add_from_uri(uri)
        click.echo(f"Added {credential.id}")


@cli.command()
@click.argument('credential_id')
@click.pass_context
def remove(ctx: click.Context, credential_id: str):
    """Remove a credential by id."""
    with _unlocked_vault(ctx) as vault:
        if not vault.remove_credential(credential_id):
            raise click.ClickException(f"Service not found: {credential_id}")
        click.echo(f"Removed {credential_id}")


@cli.command()
@click.argument('credential_id')
@click.pass_context
def icon(ctx: click.Context, credential_id: str):
    """Look up the brand icon of a credential again."""
    with _unlocked_vault(ctx) as vault:
        try:
            url = vault.refresh_icon(credential_id)
        except KeyError:
            raise click.ClickException(f"Service not found: {credential_id}")
        click.echo(url or "No icon found.")


def main():
    """Main entry point."""
    return cli(obj={})


if __name__ == "__main__":
    main()
