"""Command-line interface for Chorus."""

import asyncio
import json
from datetime import datetime, timedelta
from pathlib import Path

import click

from chorus import __version__
from chorus.config import Config
from chorus.logging import get_logger, setup_logging

log = get_logger("cli")


@click.group()
@click.option(
    "-c",
    "--config-file",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to configuration file.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Set logging level (overrides config).",
)
@click.option(
    "--log-json/--no-log-json",
    default=None,
    help="Output logs as JSON or human-readable format (overrides config).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    config_file: Path | None,
    log_level: str | None,
    log_json: bool | None,
) -> None:
    """Chorus - routes Discord messages to AI personalities."""
    ctx.ensure_object(dict)

    config = Config.load_or_default(config_file)
    ctx.obj["config"] = config
    ctx.obj["config_file"] = config_file

    effective_log_level = log_level or config.log_level
    effective_log_json = log_json if log_json is not None else config.log_json
    setup_logging(json_output=effective_log_json, level=effective_log_level)


def open_engine(config: Config):
    """Engine with the schema brought up to date."""
    from chorus.database import get_engine
    from chorus.migrations import migrate

    engine = get_engine(config)
    migrate(engine)
    return engine


@cli.command()
def version() -> None:
    """Print version information."""
    click.echo(f"chorus {__version__}")


@cli.command()
@click.option(
    "--in-memory",
    is_flag=True,
    default=False,
    help="Keep auth and personality data in memory instead of the database.",
)
@click.pass_context
def run(ctx: click.Context, in_memory: bool) -> None:
    """Connect to Discord and start routing messages.

    Requires DISCORD_TOKEN environment variable to be set.
    Use Ctrl+C or send SIGTERM for graceful shutdown.
    """
    from chorus.gateway import run_bot

    config = ctx.obj["config"]

    if not config.discord_token:
        click.echo("Error: DISCORD_TOKEN environment variable not set", err=True)
        click.echo("Set DISCORD_TOKEN to your bot token to connect to Discord.", err=True)
        raise SystemExit(1)

    engine = None if in_memory else open_engine(config)
    log.info("run_command_invoked", in_memory=in_memory)

    try:
        asyncio.run(run_bot(config, engine))
    except KeyboardInterrupt:
        log.info("shutdown_requested_keyboard")
    except Exception as e:
        log.error("run_failed", error=str(e))
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    finally:
        if engine is not None:
            engine.dispose()


# =============================================================================
# Database
# =============================================================================


@cli.group()
def db() -> None:
    """Database management commands."""
    pass


@db.command(name="init")
@click.pass_context
def db_init(ctx: click.Context) -> None:
    """Create the database and apply all migrations."""
    from chorus.migrations import get_current_version

    config = ctx.obj["config"]
    engine = open_engine(config)
    click.echo(f"Database ready: {config.database_path}")
    click.echo(f"Schema version: {get_current_version(engine)}")
    engine.dispose()


@db.command(name="status")
@click.pass_context
def db_status(ctx: click.Context) -> None:
    """Show database migration status."""
    from chorus.database import get_engine
    from chorus.migrations import get_current_version, get_pending_migrations

    config = ctx.obj["config"]
    engine = get_engine(config)

    click.echo(f"Database: {config.database_path}")
    click.echo(f"Current version: {get_current_version(engine)}")

    pending = get_pending_migrations(engine)
    if pending:
        click.echo(f"Pending migrations: {len(pending)}")
        for version, module in pending:
            click.echo(f"  {version}: {getattr(module, 'DESCRIPTION', 'No description')}")
    else:
        click.echo("No pending migrations")


@db.command(name="migrate")
@click.option(
    "--target",
    type=int,
    default=None,
    help="Target version (default: latest).",
)
@click.pass_context
def db_migrate(ctx: click.Context, target: int | None) -> None:
    """Apply pending database migrations."""
    from chorus.database import get_engine
    from chorus.migrations import get_current_version, migrate

    config = ctx.obj["config"]
    engine = get_engine(config)

    before = get_current_version(engine)
    after = migrate(engine, target_version=target)

    if before == after:
        click.echo(f"Database already at version {after}")
    else:
        click.echo(f"Migrated from version {before} to {after}")


# =============================================================================
# Configuration
# =============================================================================


@cli.group()
def config() -> None:
    """Configuration management commands."""
    pass


@config.command(name="check")
@click.option(
    "-c",
    "--config-file",
    type=click.Path(exists=True, path_type=Path),
    default="config.yaml",
    help="Path to configuration file.",
)
def config_check(config_file: Path) -> None:
    """Validate configuration file."""
    try:
        cfg = Config.load(config_file)
    except FileNotFoundError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    except Exception as e:
        click.echo(f"Configuration error: {e}", err=True)
        raise SystemExit(1)

    click.echo(f"Configuration valid: {config_file}")
    click.echo(f"  Data directory: {cfg.data_dir}")
    click.echo(f"  Database path: {cfg.database_path}")
    click.echo(f"  Log level: {cfg.log_level}")
    click.echo(f"  Mention character: {cfg.messaging.mention_char}")
    click.echo(f"  Proxy delay: {cfg.dedup.proxy_delay_seconds}s")
    click.echo(
        f"  Authentication: {'required' if cfg.auth.require_authentication else 'optional'}"
    )


# =============================================================================
# Authentication
# =============================================================================


def auth_service(ctx: click.Context):
    from chorus.identity import AuthenticationService
    from chorus.repositories import SqlAuthenticationRepository

    config = ctx.obj["config"]
    engine = open_engine(config)
    return AuthenticationService(
        SqlAuthenticationRepository(engine),
        refresh_threshold=config.auth.token_refresh_threshold,
    )


def report(result) -> None:
    """Echo a command result, exiting non-zero on failure."""
    if not result.ok:
        click.echo(f"Error: {result.error}", err=True)
        raise SystemExit(1)
    if result.aggregate is not None:
        click.echo(json.dumps(result.aggregate.to_dict(), indent=2))
    else:
        click.echo("OK")


def expiry_from(expires_in: int | None, expires_at: datetime | None) -> datetime:
    from chorus.models import ensure_aware, utcnow

    if expires_at is not None:
        return ensure_aware(expires_at)
    return utcnow() + timedelta(minutes=expires_in or 60 * 24 * 30)


token_options = [
    click.option("--token", "token_value", required=True, help="Access token value."),
    click.option(
        "--expires-in",
        type=int,
        default=None,
        help="Token lifetime in minutes (default: 30 days).",
    ),
    click.option(
        "--expires-at",
        type=click.DateTime(),
        default=None,
        help="Absolute expiry, UTC (overrides --expires-in).",
    ),
]


def with_token_options(func):
    for option in reversed(token_options):
        func = option(func)
    return func


@cli.group()
def auth() -> None:
    """Manage user authentication records."""
    pass


@auth.command(name="login")
@click.argument("identity")
@with_token_options
@click.pass_context
def auth_login(
    ctx: click.Context,
    identity: str,
    token_value: str,
    expires_in: int | None,
    expires_at: datetime | None,
) -> None:
    """Create an authentication record for IDENTITY."""
    service = auth_service(ctx)
    report(
        asyncio.run(
            service.authenticate(identity, token_value, expiry_from(expires_in, expires_at))
        )
    )


@auth.command(name="refresh")
@click.argument("identity")
@with_token_options
@click.pass_context
def auth_refresh(
    ctx: click.Context,
    identity: str,
    token_value: str,
    expires_in: int | None,
    expires_at: datetime | None,
) -> None:
    """Replace IDENTITY's token."""
    service = auth_service(ctx)
    report(
        asyncio.run(
            service.refresh_token(identity, token_value, expiry_from(expires_in, expires_at))
        )
    )


@auth.command(name="expire")
@click.argument("identity")
@click.pass_context
def auth_expire(ctx: click.Context, identity: str) -> None:
    """Drop IDENTITY's token."""
    report(asyncio.run(auth_service(ctx).expire_token(identity)))


@auth.command(name="verify-nsfw")
@click.argument("identity")
@click.pass_context
def auth_verify_nsfw(ctx: click.Context, identity: str) -> None:
    """Mark IDENTITY as NSFW-verified."""
    report(asyncio.run(auth_service(ctx).verify_nsfw(identity)))


@auth.command(name="clear-nsfw")
@click.argument("identity")
@click.option("--reason", default=None, help="Why verification was cleared.")
@click.pass_context
def auth_clear_nsfw(ctx: click.Context, identity: str, reason: str | None) -> None:
    """Clear IDENTITY's NSFW verification."""
    report(asyncio.run(auth_service(ctx).clear_nsfw_verification(identity, reason)))


@auth.command(name="blacklist")
@click.argument("identity")
@click.option("--reason", required=True, help="Why the user is blacklisted.")
@click.pass_context
def auth_blacklist(ctx: click.Context, identity: str, reason: str) -> None:
    """Blacklist IDENTITY, revoking token and NSFW verification."""
    report(asyncio.run(auth_service(ctx).blacklist(identity, reason)))


@auth.command(name="unblacklist")
@click.argument("identity")
@click.pass_context
def auth_unblacklist(ctx: click.Context, identity: str) -> None:
    """Lift IDENTITY's blacklist."""
    report(asyncio.run(auth_service(ctx).unblacklist(identity)))


@auth.command(name="revoke")
@click.argument("identity")
@click.pass_context
def auth_revoke(ctx: click.Context, identity: str) -> None:
    """Delete IDENTITY's record entirely."""
    report(asyncio.run(auth_service(ctx).revoke(identity)))


@auth.command(name="status")
@click.argument("identity")
@click.pass_context
def auth_status(ctx: click.Context, identity: str) -> None:
    """Show IDENTITY's authorization state."""
    status = asyncio.run(auth_service(ctx).status(identity))
    click.echo(json.dumps(status, indent=2))


# =============================================================================
# Personalities
# =============================================================================


def personality_directory(ctx: click.Context):
    from chorus.repositories import SqlPersonalityDirectory

    return SqlPersonalityDirectory(open_engine(ctx.obj["config"]))


@cli.group()
def personality() -> None:
    """Manage personalities and aliases."""
    pass


@personality.command(name="add")
@click.argument("personality_id")
@click.option("--name", default=None, help="Short name (default: the id).")
@click.option("--display-name", default=None, help="Name shown on webhook posts.")
@click.option("--alias", "aliases", multiple=True, help="Global alias (repeatable).")
@click.option(
    "--nsfw/--sfw",
    "nsfw_capable",
    default=True,
    help="Whether NSFW gating applies (default: --nsfw).",
)
@click.pass_context
def personality_add(
    ctx: click.Context,
    personality_id: str,
    name: str | None,
    display_name: str | None,
    aliases: tuple[str, ...],
    nsfw_capable: bool,
) -> None:
    """Register or update PERSONALITY_ID."""
    from chorus.models import Personality

    directory = personality_directory(ctx)
    added = asyncio.run(
        directory.register(
            Personality(
                id=personality_id,
                name=name or personality_id,
                display_name=display_name,
                aliases=list(aliases),
                nsfw_capable=nsfw_capable,
            )
        )
    )
    click.echo(f"Registered {added.id} ({len(added.aliases)} aliases)")


@personality.command(name="alias")
@click.argument("personality_id")
@click.argument("alias")
@click.option("--owner", default=None, help="Make the alias private to this user id.")
@click.pass_context
def personality_alias(
    ctx: click.Context, personality_id: str, alias: str, owner: str | None
) -> None:
    """Attach ALIAS to PERSONALITY_ID."""
    from chorus.errors import NotFoundError

    directory = personality_directory(ctx)
    try:
        asyncio.run(directory.add_alias(personality_id, alias, owner_id=owner))
    except NotFoundError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    scope = f"user {owner}" if owner else "global"
    click.echo(f"Alias '{alias}' -> {personality_id} ({scope})")


@personality.command(name="list")
@click.pass_context
def personality_list(ctx: click.Context) -> None:
    """List registered personalities."""
    found = asyncio.run(personality_directory(ctx).list_personalities())
    if not found:
        click.echo("No personalities registered")
        return

    click.echo(f"Personalities ({len(found)}):")
    for p in found:
        aliases = f" aliases: {', '.join(p.aliases)}" if p.aliases else ""
        nsfw = "" if p.nsfw_capable else " [sfw]"
        click.echo(f"  {p.id} ({p.label}){nsfw}{aliases}")


@personality.command(name="resolve")
@click.argument("text")
@click.option("--user", "identity", default=None, help="Resolve user-scoped aliases for this id.")
@click.pass_context
def personality_resolve(ctx: click.Context, text: str, identity: str | None) -> None:
    """Show which personality TEXT mentions."""
    from chorus.mentions import MentionResolver

    config = ctx.obj["config"]
    resolver = MentionResolver(
        personality_directory(ctx),
        mention_char=config.messaging.mention_char,
        max_words=config.messaging.max_alias_word_count,
    )
    match = asyncio.run(resolver.resolve(text, identity))
    if match is None:
        click.echo("No personality mentioned")
        raise SystemExit(1)
    click.echo(
        f"{match.resolved_personality_id} (matched '{match.matched_text}', "
        f"{match.word_count} words)"
    )


if __name__ == "__main__":
    cli()
