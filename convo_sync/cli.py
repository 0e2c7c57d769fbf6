from __future__ import annotations

import asyncio
import json
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

import click

from convo_sync.backend import MutationError
from convo_sync.config import SyncSettings
from convo_sync.db import DBBusyError, NotFoundError, PlatformDB, SchemaMismatchError
from convo_sync.engine import ConversationSync
from convo_sync.local import FileBlobStore, LocalPlatform
from convo_sync.models import Topic


@click.group()
@click.option(
    "--db-path",
    default=None,
    help="SQLite DB path (defaults to $CONVO_SYNC_DB or ~/.convo_sync/convo_sync.sqlite).",
)
@click.pass_context
def cli(ctx: click.Context, db_path: str | None) -> None:
    """Administrative CLI for convo-sync."""
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db_path


def _db(ctx: click.Context) -> PlatformDB:
    db_path = None
    if ctx.obj:
        db_path = ctx.obj.get("db_path")
    return PlatformDB(path=db_path)


def _platform(ctx: click.Context) -> LocalPlatform:
    try:
        settings = SyncSettings.from_env()
    except ValueError as e:
        raise click.ClickException(str(e)) from e
    return LocalPlatform(_db(ctx), blobs=FileBlobStore(settings.blob_dir))


@contextmanager
def _errors() -> Iterator[None]:
    try:
        yield
    except NotFoundError as e:
        raise click.ClickException(f"Not found: {e}") from None
    except (DBBusyError, SchemaMismatchError, MutationError, ValueError) as e:
        raise click.ClickException(str(e)) from e


def _conversation(user_a: str, user_b: str) -> Topic:
    try:
        return Topic.conversation(user_a, user_b)
    except ValueError as e:
        raise click.ClickException(str(e)) from e


def _dump(data: Any) -> None:
    click.echo(json.dumps(data, ensure_ascii=True, sort_keys=True, indent=2))


def _age(ts: float | None) -> str:
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


@cli.group("db")
def db_group() -> None:
    """Database operations."""


@db_group.command("wipe")
@click.option("--yes", is_flag=True, help="Do not prompt for confirmation.")
@click.pass_context
def db_wipe(ctx: click.Context, *, yes: bool) -> None:
    """Delete the local convo-sync SQLite database file (and WAL/SHM sidecars)."""
    db = _db(ctx)
    db_path = db.path
    if db_path == ":memory:":
        raise click.ClickException("Cannot wipe an in-memory DB.")

    main = Path(db_path)
    candidates = [main, Path(f"{db_path}-wal"), Path(f"{db_path}-shm")]

    click.echo(f"DB path: {main}")
    existing = [p for p in candidates if p.exists()]
    if not existing:
        click.echo("Nothing to delete (DB file not found).")
        return

    click.echo("Will delete:")
    for p in existing:
        click.echo(f"- {p}")

    if not yes and not click.confirm("Delete these files?", default=False):
        raise click.ClickException("Canceled.")

    removed = 0
    for p in existing:
        try:
            p.unlink()
        except FileNotFoundError:  # pragma: no cover
            continue
        removed += 1

    click.echo(f"Deleted {removed} file(s).")


@cli.group("profiles")
def profiles_group() -> None:
    """Profile operations."""


@profiles_group.command("set")
@click.argument("user_id")
@click.option("--username", default=None)
@click.option("--full-name", default=None)
@click.option("--avatar-url", default=None)
@click.pass_context
def profiles_set(
    ctx: click.Context,
    user_id: str,
    *,
    username: str | None,
    full_name: str | None,
    avatar_url: str | None,
) -> None:
    """Create or update a user profile."""
    with _errors():
        profile = _db(ctx).profile_upsert(
            user_id=user_id, username=username, full_name=full_name, avatar_url=avatar_url
        )
    click.echo(f"Saved profile {profile.id} ({profile.username or 'no username'}).")


@cli.group("conversations")
def conversations_group() -> None:
    """Conversation operations."""


@conversations_group.command("list")
@click.argument("viewer_id")
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of a table.")
@click.pass_context
def conversations_list(ctx: click.Context, viewer_id: str, *, as_json: bool) -> None:
    """List a user's conversations, most recent first, with unread counts."""
    db = _db(ctx)
    with _errors():
        rows = db.conversations(viewer_id=viewer_id)

    if as_json:
        _dump({"viewer_id": viewer_id, "conversations": rows})
        return

    click.echo(f"DB path: {db.path}")
    click.echo(f"Conversations of {viewer_id}: {len(rows)}")
    if not rows:
        return

    headers = ["user", "unread", "messages", "last_message_at"]
    table = [
        [
            r["other_user"]["username"] or r["other_user"]["id"],
            str(r["unread_count"]),
            str(r["message_count"]),
            _age(r["last_message_at"]),
        ]
        for r in rows
    ]
    widths = [max(len(h), *(len(row[i]) for row in table)) for i, h in enumerate(headers)]

    def _line(cells: list[str]) -> str:
        out = []
        for i, cell in enumerate(cells):
            out.append(cell.rjust(widths[i]) if i in (1, 2) else cell.ljust(widths[i]))
        return " ".join(out).rstrip()

    click.echo(_line(headers))
    for row in table:
        click.echo(_line(row))


@conversations_group.command("clear")
@click.argument("user_a")
@click.argument("user_b")
@click.option("--yes", is_flag=True, help="Do not prompt for confirmation.")
@click.pass_context
def conversations_clear(ctx: click.Context, user_a: str, user_b: str, *, yes: bool) -> None:
    """Delete every message between two users, including sent media."""
    topic = _conversation(user_a, user_b)
    platform = _platform(ctx)
    with _errors():
        count = len(platform.db.messages_between(user_a=user_a, user_b=user_b))
    if count == 0:
        click.echo("Nothing to delete (no messages).")
        return

    click.echo(click.style(f"Conversation: {topic.key}", fg="green", bold=True))
    click.echo(click.style(f"This will delete {count} message(s) and their media.", fg="red"))
    if not yes and not click.confirm("Delete this conversation?", default=False):
        raise click.ClickException("Canceled.")

    async def _clear() -> int:
        async with ConversationSync(
            platform, platform, viewer_id=user_a, blobs=platform.blobs
        ) as engine:
            return await engine.clear_history(topic)

    with _errors():
        deleted = asyncio.run(_clear())
    click.echo(f"Deleted {deleted} message(s).")


@cli.group("messages")
def messages_group() -> None:
    """Direct message operations."""


def _format_message(row: dict[str, Any]) -> str:
    seq_styled = click.style(f"[{row['id']}]", fg="white", dim=True)
    sender_styled = click.style(row["sender_id"], fg="cyan", bold=True)
    ts = datetime.fromtimestamp(row["created_at"]).strftime("%H:%M:%S")
    time_styled = click.style(ts, fg="white", dim=True)
    if row.get("media_url"):
        body = click.style(f"<media {row['media_url']}>", fg="magenta")
    else:
        body = row.get("content") or ""
        lines = body.split("\n")
        body = lines[0][:80] + " ..." if len(lines) > 1 else body[:100]
    unread = "" if row["is_read"] else click.style(" *", fg="yellow")
    return f"{seq_styled} {sender_styled} {time_styled}{unread}: {body}"


@messages_group.command("send")
@click.argument("sender_id")
@click.argument("receiver_id")
@click.argument("text")
@click.pass_context
def messages_send(ctx: click.Context, sender_id: str, receiver_id: str, text: str) -> None:
    """Send a text message."""
    if not text.strip():
        raise click.ClickException("text must be non-empty")
    topic = _conversation(sender_id, receiver_id)
    platform = _platform(ctx)
    with _errors():
        row = asyncio.run(platform.insert_item(topic, author_id=sender_id, content=text))
    click.echo(f"Sent message {row['id']} to {receiver_id}.")


@messages_group.command("list")
@click.argument("user_a")
@click.argument("user_b")
@click.option(
    "--last",
    "-n",
    type=int,
    default=None,
    help="Show only the last N messages.",
)
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of text.")
@click.pass_context
def messages_list(
    ctx: click.Context,
    user_a: str,
    user_b: str,
    *,
    last: int | None,
    as_json: bool,
) -> None:
    """Show the messages exchanged by two users, oldest first."""
    if last is not None and last <= 0:
        raise click.ClickException("last must be > 0")
    topic = _conversation(user_a, user_b)
    with _errors():
        rows = _db(ctx).messages_between(user_a=user_a, user_b=user_b, limit=last)

    if as_json:
        _dump({"topic": topic.key, "messages": rows})
        return

    click.echo(click.style(f"Conversation: {topic.key}", fg="green", bold=True))
    if not rows:
        click.echo(click.style("No messages.", dim=True))
        return
    for row in rows:
        click.echo(_format_message(row))


@messages_group.command("read")
@click.argument("viewer_id")
@click.argument("other_id")
@click.pass_context
def messages_read(ctx: click.Context, viewer_id: str, other_id: str) -> None:
    """Mark every message OTHER_ID sent to VIEWER_ID as read."""
    topic = _conversation(viewer_id, other_id)
    platform = _platform(ctx)
    with _errors():
        updated = asyncio.run(platform.mark_read(topic, viewer_id))
    click.echo(f"Marked {updated} message(s) as read.")


@messages_group.command("delete")
@click.argument("message_id")
@click.pass_context
def messages_delete(ctx: click.Context, message_id: str) -> None:
    """Delete one message (and its media file)."""
    platform = _platform(ctx)
    with _errors():
        row = platform.db.get_message(message_id=message_id)
        topic = Topic.conversation(row["sender_id"], row["receiver_id"])
        deleted = asyncio.run(platform.delete_item(topic, message_id))
        if deleted is not None and deleted.get("media_url") and platform.blobs is not None:
            asyncio.run(platform.blobs.remove([deleted["media_url"]]))
    if deleted is None:  # pragma: no cover
        raise click.ClickException(f"Not found: {message_id}")
    click.echo(f"Deleted message {message_id}.")
