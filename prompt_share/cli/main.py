"""PromptShare CLI — prompt-share command."""

from __future__ import annotations

import asyncio
import json
from dataclasses import asdict
from datetime import timedelta
from typing import Any

import click

from prompt_share.config import get_settings
from prompt_share.core.engagement import LocalEngagementLog
from prompt_share.core.engine import SIGNED_IN, SyncEngine
from prompt_share.core.limits import FREE_PLAN_LIMITS, UsageCounter, UsageLimitEngine
from prompt_share.core.preferences import ThemePreference
from prompt_share.core.realtime import RealtimeReconciler
from prompt_share.core.requests import SetTheme
from prompt_share.core.session import AuthIdentity, SessionLoader
from prompt_share.core.state import AppState, Theme
from prompt_share.core.store import Store
from prompt_share.db.client import get_supabase_client
from prompt_share.utils.logging import setup_logging

ENGAGEMENT_FILE = "engagement.json"


def _format_table(rows: list[dict], columns: list[str]) -> str:
    """Simple table formatter."""
    if not rows:
        return "No results."
    widths = {c: len(c) for c in columns}
    for row in rows:
        for c in columns:
            val = str(row.get(c, ""))
            widths[c] = max(widths[c], len(val))

    header = "  ".join(c.upper().ljust(widths[c]) for c in columns)
    separator = "  ".join("-" * widths[c] for c in columns)
    lines = [header, separator]
    for row in rows:
        line = "  ".join(str(row.get(c, "")).ljust(widths[c]) for c in columns)
        lines.append(line)
    return "\n".join(lines)


@click.group()
@click.option("--format", "output_format", type=click.Choice(["table", "json"]), default="table")
@click.pass_context
def cli(ctx: click.Context, output_format: str) -> None:
    """PromptShare CLI — inspect quotas, preferences and the live sync session."""
    settings = get_settings()
    setup_logging(settings.log_level)
    ctx.ensure_object(dict)
    ctx.obj = settings
    ctx.meta["output_format"] = output_format


def _output(ctx: click.Context, data: Any, columns: list[str] | None = None) -> None:
    fmt = ctx.meta.get("output_format", "table")
    if fmt == "json":
        click.echo(json.dumps(data, indent=2, default=str))
    elif isinstance(data, list) and columns:
        click.echo(_format_table(data, columns))
    else:
        click.echo(json.dumps(data, indent=2, default=str))


def _engagement_log(settings) -> LocalEngagementLog:
    return LocalEngagementLog(
        cap=settings.engagement_log_cap, path=settings.state_dir / ENGAGEMENT_FILE
    )


# --- Limit commands ---


@cli.group()
def limits() -> None:
    """Free-plan quotas and usage."""


@limits.command("quotas")
@click.pass_context
def limits_quotas(ctx: click.Context) -> None:
    """List free-plan quotas and the usage at which upgrade prompts start."""
    ratio = ctx.obj.upgrade_warn_ratio
    rows = [
        {"action": action, "limit": quota, "warn_at": quota * ratio}
        for action, quota in FREE_PLAN_LIMITS.items()
    ]
    _output(ctx, rows, ["action", "limit", "warn_at"])


@limits.command("check")
@click.argument("action", type=click.Choice(sorted(FREE_PLAN_LIMITS)))
@click.option("--user-id", required=True)
@click.pass_context
def limits_check(ctx: click.Context, action: str, user_id: str) -> None:
    """Show a user's backend usage for one gated action."""
    settings = ctx.obj
    engine = UsageLimitEngine(
        UsageCounter(get_supabase_client()),
        _engagement_log(settings),
        cooldown=timedelta(hours=settings.upgrade_cooldown_hours),
        warn_ratio=settings.upgrade_warn_ratio,
    )
    usage = asyncio.run(engine.current_usage(user_id, action))
    if usage is None:
        raise click.ClickException(f"Could not read usage for '{action}'")
    _output(
        ctx,
        {
            "user_id": user_id,
            "action": action,
            "usage": usage,
            "limit": engine.quota(action),
            "state": engine.usage_state(action, usage).value,
            "blocked": usage >= engine.quota(action),
        },
    )


# --- Theme commands ---


@cli.group()
def theme() -> None:
    """Persisted color theme."""


@theme.command("show")
@click.pass_context
def theme_show(ctx: click.Context) -> None:
    """Show the saved theme."""
    preference = ThemePreference(ctx.obj.state_dir)
    click.echo(preference.load().value)


@theme.command("set")
@click.argument("value", type=click.Choice([t.value for t in Theme]))
@click.pass_context
def theme_set(ctx: click.Context, value: str) -> None:
    """Save the theme used on the next start."""
    store = Store()
    ThemePreference(ctx.obj.state_dir).attach(store)
    store.dispatch(SetTheme(theme=Theme(value)))
    click.echo(f"Theme set to '{value}'")


# --- Engagement commands ---


@cli.group()
def engagement() -> None:
    """Locally recorded upgrade-prompt engagement."""


@engagement.command("show")
@click.option("--user-id", required=True)
@click.pass_context
def engagement_show(ctx: click.Context, user_id: str) -> None:
    """List recorded impressions, clicks and dismissals for a user."""
    rows = [asdict(e) for e in _engagement_log(ctx.obj).entries(user_id)]
    _output(ctx, rows, ["timestamp", "action", "metadata"])


# --- Session commands ---


@cli.group()
def session() -> None:
    """Live sync session."""


def _summary(state: AppState) -> str:
    user = state.user
    who = f"{user.email} ({user.role.value})" if user else "signed out"
    return (
        f"{who}  prompts={len(state.prompts)} comments={len(state.comments)} "
        f"hearts={len(state.hearts)} saves={len(state.saves)} theme={state.theme.value}"
    )


async def _watch(settings, email: str, password: str, duration: float) -> None:
    from prompt_share.db.realtime import SupabaseChangeFeed, create_async_client, sign_in

    client = await create_async_client()
    auth_session = await sign_in(client, email, password)
    if auth_session is None:
        raise click.ClickException("Sign-in returned no session")

    db = get_supabase_client()
    db.set_session(auth_session.access_token, auth_session.refresh_token)

    store = Store()
    loader = SessionLoader(store, db, allow_list=settings.admin_allow_list)
    reconciler = RealtimeReconciler(store, db, SupabaseChangeFeed(client), loader)
    engine = SyncEngine(store, loader, reconciler, ThemePreference(settings.state_dir))

    store.subscribe(lambda previous, current: click.echo(_summary(current)))
    engine.start()
    # Later sign-outs, user updates and user switches arrive through this listener.
    auth_listener = client.auth.on_auth_state_change(engine.on_auth_state_change)
    try:
        await engine.handle_auth_event(SIGNED_IN, AuthIdentity.from_auth_user(auth_session.user))
        if store.state.user is None:
            raise click.ClickException("Profile could not be loaded")
        if duration > 0:
            await asyncio.sleep(duration)
        else:
            await asyncio.Event().wait()
    finally:
        auth_listener.unsubscribe()
        await engine.close()


@session.command("watch")
@click.option("--email", required=True, envvar="PROMPT_SHARE_EMAIL")
@click.option("--password", required=True, envvar="PROMPT_SHARE_PASSWORD", hide_input=True)
@click.option("--duration", default=0.0, help="Seconds to watch; 0 runs until interrupted")
@click.pass_context
def session_watch(ctx: click.Context, email: str, password: str, duration: float) -> None:
    """Sign in, load the profile and print the store after every change."""
    try:
        asyncio.run(_watch(ctx.obj, email, password, duration))
    except KeyboardInterrupt:
        click.echo("Stopped.")


if __name__ == "__main__":
    cli()
