from __future__ import annotations

import os
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, cast

from convo_sync.common import now
from convo_sync.config import default_db_path

SCHEMA_VERSION = "1"

_MESSAGE_COLUMNS = "id, sender_id, receiver_id, content, media_url, is_read, created_at"
_COMMENT_COLUMNS = "id, post_id, user_id, content, created_at"
_LIKE_COLUMNS = "id, post_id, user_id, created_at"
_POST_COLUMNS = "id, user_id, caption, media_url, created_at"

_BETWEEN = "((sender_id = ? AND receiver_id = ?) OR (sender_id = ? AND receiver_id = ?))"


class DBBusyError(RuntimeError):
    pass


class SchemaMismatchError(RuntimeError):
    pass


class NotFoundError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class Profile:
    id: str
    username: str | None
    full_name: str | None
    avatar_url: str | None
    website: str | None
    updated_at: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "username": self.username,
            "full_name": self.full_name,
            "avatar_url": self.avatar_url,
            "website": self.website,
            "updated_at": self.updated_at,
        }


def _ensure_parent_dir(path: str) -> None:
    p = Path(path)
    if p.name == ":memory:":
        return
    p.parent.mkdir(parents=True, exist_ok=True)


def _int_id(value: str | int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise NotFoundError(str(value)) from None


class PlatformDB:
    """SQLite storage for the tables the social front end reads and writes.

    Rows come back as plain dicts in the same shape the change feed publishes.
    """

    def __init__(self, *, path: str | None = None) -> None:
        raw_path = path or os.environ.get("CONVO_SYNC_DB") or default_db_path()
        if raw_path != ":memory:":
            raw_path = str(Path(raw_path).expanduser())
        self.path = raw_path

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        _ensure_parent_dir(self.path)
        try:
            conn = sqlite3.connect(self.path, timeout=2.0)
        except sqlite3.OperationalError as e:  # pragma: no cover
            msg = str(e).lower()
            if "locked" in msg or "busy" in msg:
                raise DBBusyError(str(e)) from e
            raise
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA busy_timeout=2000;")
        conn.execute("PRAGMA foreign_keys=ON;")
        try:
            self._ensure_schema(conn)
            yield conn
        except sqlite3.OperationalError as e:
            msg = str(e).lower()
            if "locked" in msg or "busy" in msg:
                raise DBBusyError(str(e)) from e
            raise
        finally:
            conn.close()

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        tables = {
            cast(str, r["name"])
            for r in conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'",
            ).fetchall()
        }
        if "meta" not in tables:
            if tables - {"sqlite_sequence"}:
                raise SchemaMismatchError(
                    "Database schema is outdated (missing schema version). "
                    "Wipe it with `convo-sync db wipe --yes` or delete the file at $CONVO_SYNC_DB."
                )
            conn.executescript(
                f"""
                CREATE TABLE meta (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL
                );

                INSERT INTO meta(key, value)
                VALUES ('schema_version', '{SCHEMA_VERSION}');
                """
            )
        else:
            row = conn.execute(
                "SELECT value FROM meta WHERE key = 'schema_version'",
            ).fetchone()
            if row is None or cast(str, row["value"]) != SCHEMA_VERSION:
                raise SchemaMismatchError(
                    "Database schema version mismatch. "
                    "Wipe it with `convo-sync db wipe --yes` or delete the file at $CONVO_SYNC_DB."
                )

        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS profiles (
              id TEXT PRIMARY KEY,
              username TEXT NULL UNIQUE,
              full_name TEXT NULL,
              avatar_url TEXT NULL,
              website TEXT NULL,
              updated_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS posts (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id TEXT NOT NULL,
              caption TEXT NULL,
              media_url TEXT NOT NULL,
              created_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS messages (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              sender_id TEXT NOT NULL,
              receiver_id TEXT NOT NULL,
              content TEXT NULL,
              media_url TEXT NULL,
              is_read INTEGER NOT NULL DEFAULT 0,
              created_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS comments (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              post_id INTEGER NOT NULL REFERENCES posts(id) ON DELETE CASCADE,
              user_id TEXT NOT NULL,
              content TEXT NOT NULL,
              created_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS likes (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              post_id INTEGER NOT NULL REFERENCES posts(id) ON DELETE CASCADE,
              user_id TEXT NOT NULL,
              created_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS connections (
              follower_id TEXT NOT NULL,
              following_id TEXT NOT NULL,
              created_at REAL NOT NULL,
              PRIMARY KEY(follower_id, following_id)
            );

            CREATE INDEX IF NOT EXISTS idx_messages_pair_created_at
              ON messages(sender_id, receiver_id, created_at);

            CREATE INDEX IF NOT EXISTS idx_messages_receiver_unread
              ON messages(receiver_id, is_read);

            CREATE INDEX IF NOT EXISTS idx_comments_post_created_at
              ON comments(post_id, created_at);

            CREATE UNIQUE INDEX IF NOT EXISTS idx_likes_post_user_unique
              ON likes(post_id, user_id);
            """
        )

    # -- profiles --------------------------------------------------------------

    def profile_upsert(
        self,
        *,
        user_id: str,
        username: str | None = None,
        full_name: str | None = None,
        avatar_url: str | None = None,
        website: str | None = None,
    ) -> Profile:
        if not user_id:
            raise ValueError("user_id must be non-empty")
        updated_at = now()
        with self.connect() as conn, conn:
            try:
                conn.execute(
                    """
                    INSERT INTO profiles(id, username, full_name, avatar_url, website, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                      username = excluded.username,
                      full_name = excluded.full_name,
                      avatar_url = excluded.avatar_url,
                      website = excluded.website,
                      updated_at = excluded.updated_at
                    """,
                    (user_id, username, full_name, avatar_url, website, updated_at),
                )
            except sqlite3.IntegrityError as e:
                raise ValueError(f"username already taken: {username}") from e
        return Profile(
            id=user_id,
            username=username,
            full_name=full_name,
            avatar_url=avatar_url,
            website=website,
            updated_at=updated_at,
        )

    def get_profile(self, *, user_id: str) -> Profile:
        with self.connect() as conn:
            row = conn.execute(
                """
                SELECT id, username, full_name, avatar_url, website, updated_at
                FROM profiles
                WHERE id = ?
                """,
                (user_id,),
            ).fetchone()
        if row is None:
            raise NotFoundError(user_id)
        return _profile_from_row(row)

    def get_profiles(self, user_ids: list[str]) -> dict[str, Profile]:
        if not user_ids:
            return {}
        placeholders = ",".join("?" for _ in user_ids)
        with self.connect() as conn:
            rows = conn.execute(
                f"""
                SELECT id, username, full_name, avatar_url, website, updated_at
                FROM profiles
                WHERE id IN ({placeholders})
                """,
                tuple(user_ids),
            ).fetchall()
        return {row["id"]: _profile_from_row(row) for row in rows}

    # -- posts -----------------------------------------------------------------

    def post_create(self, *, user_id: str, media_url: str, caption: str | None = None) -> dict[str, Any]:
        created_at = now()
        with self.connect() as conn, conn:
            cur = conn.execute(
                "INSERT INTO posts(user_id, caption, media_url, created_at) VALUES (?, ?, ?, ?)",
                (user_id, caption, media_url, created_at),
            )
            post_id = cast(int, cur.lastrowid)
        return {
            "id": post_id,
            "user_id": user_id,
            "caption": caption,
            "media_url": media_url,
            "created_at": created_at,
        }

    def get_post(self, *, post_id: str | int) -> dict[str, Any]:
        with self.connect() as conn:
            row = conn.execute(
                f"SELECT {_POST_COLUMNS} FROM posts WHERE id = ?",
                (_int_id(post_id),),
            ).fetchone()
        if row is None:
            raise NotFoundError(str(post_id))
        return dict(row)

    def delete_post(self, *, post_id: str | int) -> dict[str, Any] | None:
        """Delete a post with its comments and likes. Returns the deleted post row."""
        with self.connect() as conn, conn:
            row = conn.execute(
                f"SELECT {_POST_COLUMNS} FROM posts WHERE id = ?",
                (_int_id(post_id),),
            ).fetchone()
            if row is None:
                return None
            conn.execute("DELETE FROM posts WHERE id = ?", (row["id"],))
        return dict(row)

    # -- messages --------------------------------------------------------------

    def message_insert(
        self,
        *,
        sender_id: str,
        receiver_id: str,
        content: str | None,
        media_url: str | None = None,
    ) -> dict[str, Any]:
        if not sender_id or not receiver_id:
            raise ValueError("sender_id and receiver_id must be non-empty")
        if content is None and media_url is None:
            raise ValueError("a message needs content or media_url")
        created_at = now()
        with self.connect() as conn, conn:
            cur = conn.execute(
                """
                INSERT INTO messages(sender_id, receiver_id, content, media_url, is_read, created_at)
                VALUES (?, ?, ?, ?, 0, ?)
                """,
                (sender_id, receiver_id, content, media_url, created_at),
            )
            message_id = cast(int, cur.lastrowid)
        return {
            "id": message_id,
            "sender_id": sender_id,
            "receiver_id": receiver_id,
            "content": content,
            "media_url": media_url,
            "is_read": False,
            "created_at": created_at,
        }

    def get_message(self, *, message_id: str | int) -> dict[str, Any]:
        with self.connect() as conn:
            row = conn.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ?",
                (_int_id(message_id),),
            ).fetchone()
        if row is None:
            raise NotFoundError(str(message_id))
        return _message_from_row(row)

    def messages_between(
        self,
        *,
        user_a: str,
        user_b: str,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Messages exchanged by two users in ascending creation order.

        With `limit`, only the latest `limit` messages are returned (still ascending).
        """
        params: list[Any] = [user_a, user_b, user_b, user_a]
        with self.connect() as conn:
            if limit is None:
                rows = conn.execute(
                    f"""
                    SELECT {_MESSAGE_COLUMNS}
                    FROM messages
                    WHERE {_BETWEEN}
                    ORDER BY created_at ASC, id ASC
                    """,
                    tuple(params),
                ).fetchall()
                return [_message_from_row(r) for r in rows]
            if limit <= 0:
                raise ValueError("limit must be > 0")
            params.append(limit)
            rows = conn.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS}
                FROM messages
                WHERE {_BETWEEN}
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                tuple(params),
            ).fetchall()
        return [_message_from_row(r) for r in reversed(rows)]

    def delete_message(self, *, message_id: str | int) -> dict[str, Any] | None:
        with self.connect() as conn, conn:
            row = conn.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ?",
                (_int_id(message_id),),
            ).fetchone()
            if row is None:
                return None
            conn.execute("DELETE FROM messages WHERE id = ?", (row["id"],))
        return _message_from_row(row)

    def delete_messages_between(self, *, user_a: str, user_b: str) -> list[dict[str, Any]]:
        """Delete a whole conversation. Returns the deleted rows."""
        params = (user_a, user_b, user_b, user_a)
        with self.connect() as conn, conn:
            rows = conn.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS}
                FROM messages
                WHERE {_BETWEEN}
                ORDER BY created_at ASC, id ASC
                """,
                params,
            ).fetchall()
            if rows:
                conn.execute(f"DELETE FROM messages WHERE {_BETWEEN}", params)
        return [_message_from_row(r) for r in rows]

    def unread_count(self, *, viewer_id: str, other_id: str) -> int:
        with self.connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(1) AS n
                FROM messages
                WHERE sender_id = ? AND receiver_id = ? AND is_read = 0
                """,
                (other_id, viewer_id),
            ).fetchone()
        return cast(int, row["n"])

    def last_activity(self, *, user_a: str, user_b: str) -> float | None:
        with self.connect() as conn:
            row = conn.execute(
                f"SELECT MAX(created_at) AS ts FROM messages WHERE {_BETWEEN}",
                (user_a, user_b, user_b, user_a),
            ).fetchone()
        return None if row["ts"] is None else cast(float, row["ts"])

    def mark_read(self, *, viewer_id: str, other_id: str) -> int:
        """Mark every message `other_id` sent to `viewer_id` as read. Returns rows updated."""
        with self.connect() as conn, conn:
            cur = conn.execute(
                """
                UPDATE messages
                SET is_read = 1
                WHERE sender_id = ? AND receiver_id = ? AND is_read = 0
                """,
                (other_id, viewer_id),
            )
            return cur.rowcount

    def conversations(self, *, viewer_id: str) -> list[dict[str, Any]]:
        """Everyone `viewer_id` has exchanged messages with, most recent activity first."""
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT
                  CASE WHEN m.sender_id = ? THEN m.receiver_id ELSE m.sender_id END AS other_id,
                  MAX(m.created_at) AS last_message_at,
                  SUM(CASE WHEN m.receiver_id = ? AND m.is_read = 0 THEN 1 ELSE 0 END)
                    AS unread_count,
                  COUNT(1) AS message_count
                FROM messages m
                WHERE m.sender_id = ? OR m.receiver_id = ?
                GROUP BY other_id
                ORDER BY last_message_at DESC
                """,
                (viewer_id, viewer_id, viewer_id, viewer_id),
            ).fetchall()

        profiles = self.get_profiles([r["other_id"] for r in rows])
        out: list[dict[str, Any]] = []
        for r in rows:
            other_id = cast(str, r["other_id"])
            profile = profiles.get(other_id)
            out.append(
                {
                    "other_user": {
                        "id": other_id,
                        "username": profile.username if profile else None,
                        "avatar_url": profile.avatar_url if profile else None,
                    },
                    "last_message_at": cast(float, r["last_message_at"]),
                    "unread_count": cast(int, r["unread_count"]),
                    "message_count": cast(int, r["message_count"]),
                }
            )
        return out

    # -- comments --------------------------------------------------------------

    def comment_insert(self, *, post_id: str | int, user_id: str, content: str) -> dict[str, Any]:
        if not content or not content.strip():
            raise ValueError("content must be a non-empty string")
        created_at = now()
        pid = _int_id(post_id)
        with self.connect() as conn, conn:
            if conn.execute("SELECT 1 FROM posts WHERE id = ?", (pid,)).fetchone() is None:
                raise NotFoundError(str(post_id))
            cur = conn.execute(
                "INSERT INTO comments(post_id, user_id, content, created_at) VALUES (?, ?, ?, ?)",
                (pid, user_id, content, created_at),
            )
            comment_id = cast(int, cur.lastrowid)
        return {
            "id": comment_id,
            "post_id": pid,
            "user_id": user_id,
            "content": content,
            "created_at": created_at,
        }

    def comments_for_post(self, *, post_id: str | int) -> list[dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_COMMENT_COLUMNS}
                FROM comments
                WHERE post_id = ?
                ORDER BY created_at ASC, id ASC
                """,
                (_int_id(post_id),),
            ).fetchall()
        return [dict(r) for r in rows]

    def delete_comment(self, *, comment_id: str | int) -> dict[str, Any] | None:
        with self.connect() as conn, conn:
            row = conn.execute(
                f"SELECT {_COMMENT_COLUMNS} FROM comments WHERE id = ?",
                (_int_id(comment_id),),
            ).fetchone()
            if row is None:
                return None
            conn.execute("DELETE FROM comments WHERE id = ?", (row["id"],))
        return dict(row)

    def delete_comments_for_post(self, *, post_id: str | int) -> list[dict[str, Any]]:
        pid = _int_id(post_id)
        with self.connect() as conn, conn:
            rows = conn.execute(
                f"SELECT {_COMMENT_COLUMNS} FROM comments WHERE post_id = ? ORDER BY id",
                (pid,),
            ).fetchall()
            conn.execute("DELETE FROM comments WHERE post_id = ?", (pid,))
        return [dict(r) for r in rows]

    # -- likes -----------------------------------------------------------------

    def like_add(self, *, post_id: str | int, user_id: str) -> tuple[dict[str, Any], bool]:
        """Like a post. Returns (like_row, already_liked)."""
        pid = _int_id(post_id)
        created_at = now()
        with self.connect() as conn, conn:
            if conn.execute("SELECT 1 FROM posts WHERE id = ?", (pid,)).fetchone() is None:
                raise NotFoundError(str(post_id))
            existing = conn.execute(
                f"SELECT {_LIKE_COLUMNS} FROM likes WHERE post_id = ? AND user_id = ?",
                (pid, user_id),
            ).fetchone()
            if existing is not None:
                return dict(existing), True
            cur = conn.execute(
                "INSERT INTO likes(post_id, user_id, created_at) VALUES (?, ?, ?)",
                (pid, user_id, created_at),
            )
            like_id = cast(int, cur.lastrowid)
        return {"id": like_id, "post_id": pid, "user_id": user_id, "created_at": created_at}, False

    def like_remove(self, *, post_id: str | int, user_id: str) -> dict[str, Any] | None:
        pid = _int_id(post_id)
        with self.connect() as conn, conn:
            row = conn.execute(
                f"SELECT {_LIKE_COLUMNS} FROM likes WHERE post_id = ? AND user_id = ?",
                (pid, user_id),
            ).fetchone()
            if row is None:
                return None
            conn.execute("DELETE FROM likes WHERE id = ?", (row["id"],))
        return dict(row)

    def likes_for_post(self, *, post_id: str | int) -> list[dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute(
                f"SELECT {_LIKE_COLUMNS} FROM likes WHERE post_id = ? ORDER BY id",
                (_int_id(post_id),),
            ).fetchall()
        return [dict(r) for r in rows]

    # -- connections -----------------------------------------------------------

    def follow(self, *, follower_id: str, following_id: str) -> bool:
        """Returns False if the connection already existed."""
        if follower_id == following_id:
            raise ValueError("users cannot follow themselves")
        with self.connect() as conn, conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO connections(follower_id, following_id, created_at)
                VALUES (?, ?, ?)
                """,
                (follower_id, following_id, now()),
            )
            return cur.rowcount == 1

    def unfollow(self, *, follower_id: str, following_id: str) -> bool:
        with self.connect() as conn, conn:
            cur = conn.execute(
                "DELETE FROM connections WHERE follower_id = ? AND following_id = ?",
                (follower_id, following_id),
            )
            return cur.rowcount == 1

    def connection_counts(self, *, user_id: str) -> dict[str, int]:
        with self.connect() as conn:
            row = conn.execute(
                """
                SELECT
                  (SELECT COUNT(1) FROM connections WHERE following_id = ?) AS followers,
                  (SELECT COUNT(1) FROM connections WHERE follower_id = ?) AS following
                """,
                (user_id, user_id),
            ).fetchone()
        return {"followers": cast(int, row["followers"]), "following": cast(int, row["following"])}

    def is_following(self, *, follower_id: str, following_id: str) -> bool:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM connections WHERE follower_id = ? AND following_id = ?",
                (follower_id, following_id),
            ).fetchone()
        return row is not None


def _profile_from_row(row: sqlite3.Row) -> Profile:
    return Profile(
        id=row["id"],
        username=row["username"],
        full_name=row["full_name"],
        avatar_url=row["avatar_url"],
        website=row["website"],
        updated_at=row["updated_at"],
    )


def _message_from_row(row: sqlite3.Row) -> dict[str, Any]:
    out = dict(row)
    out["is_read"] = bool(out["is_read"])
    return out
