"""Database repository for account lifecycle data."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator

from psycopg import Connection
from psycopg.rows import tuple_row
from psycopg.types.json import Json
from psycopg_pool import ConnectionPool

from .config import Settings
from .domain.account import Account, Group, GroupMembership, GroupRole
from .domain.contracts import AccountQuery

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

_ACCOUNT_COLUMNS = """
    account_id, username, email, created_at, is_deactivated, deactivated_at,
    is_deleted, deleted_at, pending_group_actions
"""
_GROUP_COLUMNS = "group_id, name, created_by_id, created_at, is_deleted, deleted_at"
_MEMBERSHIP_COLUMNS = "group_id, account_id, role, joined_at"


def build_pool(settings: Settings) -> ConnectionPool:
    """Create a closed connection pool whose sessions carry the statement timeout."""
    return ConnectionPool(
        settings.database_url,
        min_size=settings.db_pool_min_size,
        max_size=settings.db_pool_max_size,
        kwargs={"options": f"-c statement_timeout={settings.db_statement_timeout_ms}"},
        open=False,
    )


def _map_account(row: tuple) -> Account:
    """Convert a raw database tuple into the domain ``Account`` dataclass."""
    return Account(
        account_id=str(row[0]),
        username=row[1],
        email=row[2],
        created_at=row[3],
        is_deactivated=row[4],
        deactivated_at=row[5],
        is_deleted=row[6],
        deleted_at=row[7],
        pending_group_actions=row[8],
    )


def _map_group(row: tuple) -> Group:
    return Group(
        group_id=str(row[0]),
        name=row[1],
        created_by_id=str(row[2]),
        created_at=row[3],
        is_deleted=row[4],
        deleted_at=row[5],
    )


def _map_membership(row: tuple) -> GroupMembership:
    return GroupMembership(
        group_id=str(row[0]),
        account_id=str(row[1]),
        role=GroupRole(row[2]),
        joined_at=row[3],
    )


def _account_where(query: AccountQuery) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if not query.include_deleted:
        clauses.append("is_deleted = FALSE")
    if query.is_deactivated is not None:
        clauses.append("is_deactivated = %s")
        params.append(query.is_deactivated)
    if query.deactivated_before is not None:
        clauses.append("deactivated_at IS NOT NULL AND deactivated_at <= %s")
        params.append(query.deactivated_before)
    if query.has_pending_group_actions is True:
        clauses.append("pending_group_actions IS NOT NULL AND pending_group_actions <> ''")
    elif query.has_pending_group_actions is False:
        clauses.append("(pending_group_actions IS NULL OR pending_group_actions = '')")
    where_sql = " AND ".join(clauses) if clauses else "TRUE"
    return where_sql, params


class AccountUnitOfWork:
    """Transaction-scoped view over one connection.

    Mutations become visible only after :meth:`commit`; leaving the owning
    ``with`` block without committing rolls everything back.
    """

    def __init__(self, conn: Connection) -> None:
        self._conn = conn
        self.committed = False

    def get_account(
        self, account_id: str, *, include_deleted: bool = False, for_update: bool = False
    ) -> Account | None:
        visibility = "" if include_deleted else "AND is_deleted = FALSE"
        lock = "FOR UPDATE" if for_update else ""
        with self._conn.cursor(row_factory=tuple_row) as cur:
            cur.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE account_id = %s {visibility} {lock}",
                (account_id,),
            )
            row = cur.fetchone()
        return _map_account(row) if row else None

    def get_group(self, group_id: str, *, include_deleted: bool = False) -> Group | None:
        visibility = "" if include_deleted else "AND is_deleted = FALSE"
        with self._conn.cursor(row_factory=tuple_row) as cur:
            cur.execute(
                f"SELECT {_GROUP_COLUMNS} FROM groups WHERE group_id = %s {visibility} FOR UPDATE",
                (group_id,),
            )
            row = cur.fetchone()
        return _map_group(row) if row else None

    def list_created_groups(self, account_id: str) -> list[Group]:
        """Return the visible groups whose ``created_by_id`` is the account."""
        with self._conn.cursor(row_factory=tuple_row) as cur:
            cur.execute(
                f"""
                SELECT {_GROUP_COLUMNS}
                FROM groups
                WHERE created_by_id = %s AND is_deleted = FALSE
                ORDER BY created_at, group_id
                """,
                (account_id,),
            )
            return [_map_group(row) for row in cur.fetchall()]

    def query_memberships(
        self, account_id: str, *, exclude_role: GroupRole | None = None
    ) -> list[GroupMembership]:
        """Return membership rows held by an account, optionally excluding one role."""
        sql = f"SELECT {_MEMBERSHIP_COLUMNS} FROM group_members WHERE account_id = %s"
        params: list[Any] = [account_id]
        if exclude_role is not None:
            sql += " AND role <> %s"
            params.append(exclude_role.value)
        sql += " ORDER BY group_id"
        with self._conn.cursor(row_factory=tuple_row) as cur:
            cur.execute(sql, params)
            return [_map_membership(row) for row in cur.fetchall()]

    def list_group_members(self, group_id: str) -> list[GroupMembership]:
        with self._conn.cursor(row_factory=tuple_row) as cur:
            cur.execute(
                f"SELECT {_MEMBERSHIP_COLUMNS} FROM group_members WHERE group_id = %s ORDER BY joined_at",
                (group_id,),
            )
            return [_map_membership(row) for row in cur.fetchall()]

    def save_membership(self, membership: GroupMembership) -> None:
        with self._conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO group_members (group_id, account_id, role, joined_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (group_id, account_id) DO UPDATE SET role = EXCLUDED.role
                """,
                (membership.group_id, membership.account_id, membership.role.value, membership.joined_at),
            )

    def remove_memberships(self, memberships: Iterable[GroupMembership]) -> int:
        keys = [(m.group_id, m.account_id) for m in memberships]
        if not keys:
            return 0
        with self._conn.cursor() as cur:
            cur.executemany(
                "DELETE FROM group_members WHERE group_id = %s AND account_id = %s",
                keys,
            )
        return len(keys)

    def update_group(self, group: Group) -> None:
        with self._conn.cursor() as cur:
            cur.execute(
                """
                UPDATE groups
                SET created_by_id = %s, is_deleted = %s, deleted_at = %s, updated_at = NOW()
                WHERE group_id = %s
                """,
                (group.created_by_id, group.is_deleted, group.deleted_at, group.group_id),
            )

    def update_account(self, account: Account) -> None:
        """Persist the lifecycle columns of an account."""
        with self._conn.cursor() as cur:
            cur.execute(
                """
                UPDATE accounts
                SET is_deactivated = %s,
                    deactivated_at = %s,
                    is_deleted = %s,
                    deleted_at = %s,
                    pending_group_actions = %s,
                    updated_at = NOW()
                WHERE account_id = %s
                """,
                (
                    account.is_deactivated,
                    account.deactivated_at,
                    account.is_deleted,
                    account.deleted_at,
                    account.pending_group_actions,
                    account.account_id,
                ),
            )
            if cur.rowcount != 1:
                raise LookupError(f"account {account.account_id} was not updated")

    def write_audit_event(
        self,
        *,
        account_id: str | None,
        event_type: str,
        actor: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record an audit trail entry in the current transaction."""
        with self._conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO account_audit_log (account_id, event_type, actor, metadata)
                VALUES (%s, %s, %s, %s)
                """,
                (account_id, event_type, actor, Json(metadata or {})),
            )

    def commit(self) -> None:
        self._conn.commit()
        self.committed = True


class AccountRepository:
    """Postgres-backed gateway over accounts, groups and memberships."""

    def __init__(self, pool: ConnectionPool) -> None:
        """Store the connection pool used for all database interactions."""
        self._pool = pool

    def query_accounts(self, query: AccountQuery) -> Iterator[Account]:
        """Run one query for the predicate and return a one-shot iterator over the snapshot."""
        where_sql, params = _account_where(query)
        sql = f"""
            SELECT {_ACCOUNT_COLUMNS}
            FROM accounts
            WHERE {where_sql}
            ORDER BY deactivated_at NULLS LAST, account_id
        """
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
        return (_map_account(row) for row in rows)

    def get_account(self, account_id: str, *, include_deleted: bool = False) -> Account | None:
        """Fetch an account by id, hiding soft-deleted rows unless asked otherwise."""
        visibility = "" if include_deleted else "AND is_deleted = FALSE"
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE account_id = %s {visibility}",
                    (account_id,),
                )
                row = cur.fetchone()
        return _map_account(row) if row else None

    @contextmanager
    def unit_of_work(self) -> Iterator[AccountUnitOfWork]:
        """Yield a transaction scope; uncommitted work is rolled back on exit."""
        with self._pool.connection() as conn:
            uow = AccountUnitOfWork(conn)
            try:
                yield uow
            finally:
                if not uow.committed:
                    conn.rollback()

    def apply_migrations(self, directory: Path = MIGRATIONS_DIR) -> list[str]:
        """Apply pending ``*.sql`` files in name order and return the applied versions."""
        applied: list[str] = []
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS schema_migrations (
                        version TEXT PRIMARY KEY,
                        applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                    )
                    """
                )
                cur.execute("SELECT version FROM schema_migrations")
                done = {row[0] for row in cur.fetchall()}
                conn.commit()

                for path in sorted(directory.glob("*.sql")):
                    version = path.stem
                    if version in done:
                        continue
                    logger.info("applying migration %s", version)
                    cur.execute(path.read_text(encoding="utf-8"))
                    cur.execute("INSERT INTO schema_migrations (version) VALUES (%s)", (version,))
                    conn.commit()
                    applied.append(version)
        return applied
