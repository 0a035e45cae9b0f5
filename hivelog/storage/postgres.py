from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from hivelog.logging import get_logger
from hivelog.storage.common import OWNER_COLUMN, ROOT_TABLE, OwnershipChain
from hivelog.storage.errors import ConstraintViolation, RowCountMismatch
from hivelog.storage.models import RECORD_TYPES, MUTABLE_FIELDS, Role, User

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS app_user (
    id UUID PRIMARY KEY,
    username TEXT NOT NULL,
    email TEXT NOT NULL UNIQUE,
    password_hash TEXT,
    password_algo TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS role (
    id SERIAL PRIMARY KEY,
    name TEXT NOT NULL UNIQUE
);
CREATE TABLE IF NOT EXISTS user_role (
    user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
    role_id INTEGER NOT NULL REFERENCES role(id) ON DELETE CASCADE,
    PRIMARY KEY (user_id, role_id)
);
CREATE TABLE IF NOT EXISTS location (
    id UUID PRIMARY KEY,
    user_id UUID NOT NULL REFERENCES app_user(id),
    name TEXT NOT NULL,
    address TEXT,
    latitude DOUBLE PRECISION,
    longitude DOUBLE PRECISION,
    country TEXT,
    notes TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    deleted_at TIMESTAMPTZ
);
CREATE TABLE IF NOT EXISTS hive (
    id UUID PRIMARY KEY,
    location_id UUID NOT NULL REFERENCES location(id),
    hive_name TEXT NOT NULL,
    description TEXT,
    is_active BOOLEAN NOT NULL DEFAULT true,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    deleted_at TIMESTAMPTZ
);
CREATE TABLE IF NOT EXISTS major_inspection (
    id UUID PRIMARY KEY,
    location_id UUID NOT NULL REFERENCES location(id),
    inspection_date DATE NOT NULL,
    general_notes TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    deleted_at TIMESTAMPTZ
);
CREATE TABLE IF NOT EXISTS hive_inspection (
    id UUID PRIMARY KEY,
    major_inspection_id UUID NOT NULL REFERENCES major_inspection(id),
    hive_id UUID NOT NULL REFERENCES hive(id),
    inspection_hour TEXT,
    colony_health_status TEXT,
    number_of_chambers INTEGER,
    queen_status TEXT,
    varroa_mites_found BOOLEAN NOT NULL DEFAULT false,
    varroa_treatment BOOLEAN NOT NULL DEFAULT false,
    sugar_feed_added BOOLEAN NOT NULL DEFAULT false,
    raising_new_queen BOOLEAN NOT NULL DEFAULT false,
    other_notes TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    deleted_at TIMESTAMPTZ
);
INSERT INTO role (name) VALUES ('admin'), ('vet'), ('spectator'), ('user')
ON CONFLICT (name) DO NOTHING;
"""

REQUIRED_TABLES = (
    "app_user",
    "role",
    "user_role",
    "location",
    "hive",
    "major_inspection",
    "hive_inspection",
)


def build_ownership_query(chain: OwnershipChain) -> str:
    """Single SELECT resolving the whole chain with INNER JOINs.

    Aliases run t0 (leaf) .. tN (location); parameters are the chain ids
    in the same order followed by the principal id.
    """
    tables = chain.tables
    joins = []
    for index, link in enumerate(chain.links):
        parent = index + 1
        joins.append(
            f"JOIN {tables[parent]} t{parent} "
            f"ON t{parent}.id = t{index}.{link.foreign_key} "
            f"AND t{parent}.deleted_at IS NULL"
        )
    conditions = [f"t{i}.id = %s" for i in range(len(tables))]
    conditions.append("t0.deleted_at IS NULL")
    conditions.append(f"t{len(tables) - 1}.{OWNER_COLUMN} = %s")
    return " ".join(
        [f"SELECT t0.* FROM {tables[0]} t0", *joins, "WHERE " + " AND ".join(conditions)]
    )


def _check_table(table: str, *columns: str) -> None:
    if table not in RECORD_TYPES:
        raise ValueError(f"unknown table: {table}")
    for column in columns:
        if column not in RECORD_TYPES[table].__dataclass_fields__:
            raise ValueError(f"unknown column {table}.{column}")


def _parse_user_id(user_id: str) -> Optional[str]:
    try:
        return str(uuid.UUID(str(user_id)))
    except ValueError:
        return None


def _row_to_record(table: str, row: Dict[str, Any]) -> Any:
    record_cls = RECORD_TYPES[table]
    fields = record_cls.__dataclass_fields__
    values = {key: row[key] for key in fields if key in row}
    for key, value in list(values.items()):
        if isinstance(value, uuid.UUID):
            values[key] = str(value)
    return record_cls(**values)


class PostgresStore:
    """Postgres-backed store for users, roles and inspection records."""

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
        apply_schema: bool = False,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if apply_schema:
            self.apply_schema()
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def apply_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(SCHEMA_SQL)

    def _verify_required_schema(self) -> None:
        """Ensure core tables exist before serving requests."""
        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Run scripts/bootstrap_admin.py "
                "--apply-schema to install them.".format(", ".join(sorted(missing_tables)))
            )

    def ping(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row.get("ok") == 1)

    # users
    def _user_roles(self, conn, user_id: str) -> List[str]:
        rows = conn.execute(
            """
            SELECT r.name FROM user_role ur
            JOIN role r ON r.id = ur.role_id
            WHERE ur.user_id = %s
            ORDER BY r.id
            """,
            (user_id,),
        ).fetchall()
        return [row["name"] for row in rows]

    def _user_from_row(self, conn, row: Dict[str, Any]) -> User:
        user_id = str(row["id"])
        return User(
            id=user_id,
            username=row["username"],
            email=row["email"],
            created_at=row["created_at"],
            roles=self._user_roles(conn, user_id),
        )

    def create_user(
        self, username: str, email: str, *, roles: Sequence[str] = ("user",)
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                with conn.transaction():
                    row = conn.execute(
                        """
                        INSERT INTO app_user (id, username, email)
                        VALUES (%s, %s, %s)
                        RETURNING *
                        """,
                        (user_id, username, email),
                    ).fetchone()
                    for role_name in roles:
                        conn.execute(
                            """
                            INSERT INTO user_role (user_id, role_id)
                            SELECT %s, id FROM role WHERE name = %s
                            ON CONFLICT DO NOTHING
                            """,
                            (user_id, role_name),
                        )
                    return self._user_from_row(conn, row)
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})

    def get_user(self, user_id: str) -> Optional[User]:
        user_id = _parse_user_id(user_id)
        if user_id is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
            return self._user_from_row(conn, row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = lower(%s)", (email,)
            ).fetchone()
            return self._user_from_row(conn, row) if row else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at LIMIT %s", (limit,)
            ).fetchall()
            return [self._user_from_row(conn, row) for row in rows]

    def update_user(
        self,
        user_id: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[User]:
        user_id = _parse_user_id(user_id)
        if user_id is None:
            return None
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE app_user
                    SET username = COALESCE(%s, username), email = COALESCE(%s, email)
                    WHERE id = %s
                    RETURNING *
                    """,
                    (username, email, user_id),
                ).fetchone()
                return self._user_from_row(conn, row) if row else None
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET password_hash = %s, password_algo = %s WHERE id = %s",
                (password_hash, password_algo, user_id),
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM app_user WHERE id = %s",
                (user_id,),
            ).fetchone()
        if not row or not row.get("password_hash"):
            return None
        return row["password_hash"], row["password_algo"]

    # roles
    def ensure_role(self, name: str) -> Role:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO role (name) VALUES (%s)
                ON CONFLICT (name) DO UPDATE SET name = EXCLUDED.name
                RETURNING id, name
                """,
                (name,),
            ).fetchone()
        return Role(id=row["id"], name=row["name"])

    def get_role(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, name FROM role WHERE name = %s", (name,)
            ).fetchone()
        return Role(id=row["id"], name=row["name"]) if row else None

    def list_roles(self) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute("SELECT id, name FROM role ORDER BY id").fetchall()
        return [Role(id=row["id"], name=row["name"]) for row in rows]

    def assign_role(self, user_id: str, role_name: str) -> Optional[User]:
        user_id = _parse_user_id(user_id)
        if user_id is None:
            return None
        with self._connect() as conn:
            result = conn.execute(
                """
                INSERT INTO user_role (user_id, role_id)
                SELECT u.id, r.id FROM app_user u, role r
                WHERE u.id = %s AND r.name = %s
                ON CONFLICT DO NOTHING
                """,
                (user_id, role_name),
            )
            if result.rowcount == 0 and not self._role_link_exists(conn, user_id, role_name):
                return None
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
            return self._user_from_row(conn, row) if row else None

    def _role_link_exists(self, conn, user_id: str, role_name: str) -> bool:
        row = conn.execute(
            """
            SELECT 1 AS present FROM user_role ur JOIN role r ON r.id = ur.role_id
            WHERE ur.user_id = %s AND r.name = %s
            """,
            (user_id, role_name),
        ).fetchone()
        return bool(row)

    def remove_role(self, user_id: str, role_name: str) -> Optional[User]:
        user_id = _parse_user_id(user_id)
        if user_id is None:
            return None
        with self._connect() as conn:
            role = conn.execute(
                "SELECT id FROM role WHERE name = %s", (role_name,)
            ).fetchone()
            if not role:
                return None
            conn.execute(
                """
                DELETE FROM user_role
                WHERE user_id = %s AND role_id = (SELECT id FROM role WHERE name = %s)
                """,
                (user_id, role_name),
            )
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
            return self._user_from_row(conn, row) if row else None

    # records
    def create_record(self, table: str, **fields: Any) -> Any:
        _check_table(table, *fields)
        values = {"id": str(uuid.uuid4()), **fields}
        columns = ", ".join(values)
        placeholders = ", ".join(["%s"] * len(values))
        with self._connect() as conn:
            row = conn.execute(
                f"INSERT INTO {table} ({columns}) VALUES ({placeholders}) RETURNING *",
                tuple(values.values()),
            ).fetchone()
        return _row_to_record(table, row)

    def list_records(self, table: str, parent_key: str, parent_id: str) -> List[Any]:
        _check_table(table, parent_key)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM {table} WHERE {parent_key} = %s "
                "AND deleted_at IS NULL ORDER BY created_at",
                (parent_id,),
            ).fetchall()
        return [_row_to_record(table, row) for row in rows]

    def list_locations(self, user_id: str) -> List[Any]:
        return self.list_records(ROOT_TABLE, OWNER_COLUMN, user_id)

    def find_owned(
        self, chain: OwnershipChain, ids: Sequence[str], principal_id: str
    ) -> Optional[Any]:
        """Return the leaf record if every link of ``chain`` holds, else None."""
        chain.check_ids(ids)
        query = build_ownership_query(chain)
        try:
            with self._connect() as conn:
                row = conn.execute(query, (*ids, principal_id)).fetchone()
        except errors.InvalidTextRepresentation:
            # Malformed UUID in a route parameter cannot match any row
            return None
        return _row_to_record(chain.leaf_table, row) if row else None

    def update_scoped(
        self,
        table: str,
        record_id: str,
        scope_key: str,
        scope_value: str,
        changes: Dict[str, Any],
    ) -> Optional[Any]:
        _check_table(table, scope_key)
        unknown = set(changes) - set(MUTABLE_FIELDS[table])
        if unknown:
            raise ValueError(f"immutable fields for {table}: {sorted(unknown)}")
        assignments = ", ".join(f"{column} = %s" for column in changes)
        if assignments:
            assignments += ", "
        with self._connect() as conn:
            with conn.transaction():
                cur = conn.execute(
                    f"UPDATE {table} SET {assignments}updated_at = now() "
                    f"WHERE id = %s AND {scope_key} = %s AND deleted_at IS NULL "
                    "RETURNING *",
                    (*changes.values(), record_id, scope_value),
                )
                if cur.rowcount > 1:
                    raise RowCountMismatch(table, cur.rowcount)
                row = cur.fetchone()
        return _row_to_record(table, row) if row else None

    def delete_scoped(
        self, table: str, record_id: str, scope_key: str, scope_value: str
    ) -> bool:
        _check_table(table, scope_key)
        with self._connect() as conn:
            with conn.transaction():
                cur = conn.execute(
                    f"UPDATE {table} SET deleted_at = now(), updated_at = now() "
                    f"WHERE id = %s AND {scope_key} = %s AND deleted_at IS NULL",
                    (record_id, scope_value),
                )
                if cur.rowcount > 1:
                    raise RowCountMismatch(table, cur.rowcount)
                deleted = cur.rowcount == 1
        if deleted:
            self.logger.info("record_soft_deleted", table=table, record_id=record_id)
        return deleted

    def close(self) -> None:
        self.pool.close()
