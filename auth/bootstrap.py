"""
auth/bootstrap.py -- Startup schema audit, destructive rebuild and seeding.

Runs once, before the application serves traffic:

  1. Audit: compare every expected table and column (auth/schema.py
     EXPECTED_SCHEMA) with what the live database reflects.
  2. Any missing table or column, or any column whose type family, length
     or nullability differs -> full rebuild. There is no incremental
     migration: every known table is dropped (reverse dependency order),
     recreated (dependency order) and reseeded.
  3. Schema fine but no active admin user (and reseeding enabled) -> seed
     only, reactivating soft-deleted seed rows instead of duplicating them.

Seeding writes the one-time credentials file (mode 0600) from inside the seed
transaction, so a failed write rolls the seed back and a successful seed always
leaves its credentials behind. The plaintext password and client secret exist
nowhere else.

A table that cannot be reflected raises SchemaAuditError. Every failure here
is fatal to startup; the caller must not serve requests after one.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import false, inspect, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.errors import SchemaAuditError
from auth.guard import WILDCARD_ACTION, WILDCARD_RESOURCE
from auth.schema import (
    EXPECTED_SCHEMA,
    STANDARD_ACTIONS,
    TABLE_CREATION_ORDER,
    ColumnSpec,
    applications,
    clients,
    describe_type,
    permissions,
    resources,
    role_permissions,
    roles,
    subject_roles,
    subjects,
    users,
)
from auth.tokens import encrypt_secret, generate_client_id, generate_secret, hash_password

logger = logging.getLogger("gatehouse.bootstrap")

SYSTEM_RESOURCES: tuple[str, ...] = (
    WILDCARD_RESOURCE,
    "OAUTH2_user",
    "OAUTH2_client",
    "OAUTH2_application",
    "OAUTH2_role",
    "OAUTH2_resource",
    "OAUTH2_permission",
)

ADMIN_LOGIN = "admin"
ADMIN_ROLE = "admin"
ADMIN_SUBJECT_NAME = "Admin"
ADMIN_SUBJECT_DESCRIPTION = "The admin of the application"


@dataclass
class AdminCredentials:
    username: str
    password: str
    client_id: str
    client_secret: str

    def render(self) -> str:
        return (
            "Credentials for the admin user.\n"
            f"Username: {self.username}\n"
            f"Password: {self.password}\n"
            "\n"
            "Credentials for the admin client.\n"
            f"client_id: {self.client_id}\n"
            f"client_secret: {self.client_secret}\n"
        )


@dataclass
class BootstrapResult:
    rebuilt: bool = False
    seeded: bool = False
    inconsistencies: list[str] = field(default_factory=list)
    credentials: AdminCredentials | None = None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SchemaBootstrap:
    """Audit, rebuild and seed the identity schema on one engine."""

    def __init__(
        self,
        engine: Engine,
        crypto_secret: str,
        extra_resources: list[str] | tuple[str, ...] = (),
        main_application_name: str = "OAUTH2_main_application",
        client_id_suffix: str = "",
        credentials_path: str | Path = "credentials.txt",
        reseed_when_no_admin: bool = True,
    ) -> None:
        self.engine = engine
        self.crypto_secret = crypto_secret
        self.extra_resources = list(extra_resources)
        self.main_application_name = main_application_name
        self.client_id_suffix = client_id_suffix
        self.credentials_path = Path(credentials_path)
        self.reseed_when_no_admin = reseed_when_no_admin

    @property
    def resource_names(self) -> list[str]:
        """System resources first (OAUTH2_global leading), then extras, without duplicates."""
        return list(dict.fromkeys([*SYSTEM_RESOURCES, *self.extra_resources]))

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def missing_tables(self) -> list[str]:
        existing = set(inspect(self.engine).get_table_names())
        return [name for name in EXPECTED_SCHEMA if name not in existing]

    def audit_table(self, inspector, table_name: str, expected: dict[str, ColumnSpec]) -> list[str]:
        """Return one message per expected column that is missing or differs."""
        try:
            live = {column["name"]: column for column in inspector.get_columns(table_name)}
        except SQLAlchemyError as exc:
            raise SchemaAuditError(f"Cannot reflect table {table_name}", original_error=exc) from exc

        problems = []
        for name, spec in expected.items():
            column = live.get(name)
            if column is None:
                problems.append(f"{table_name}.{name}: column missing")
                continue
            family, length = describe_type(column["type"])
            actual = ColumnSpec(type=family, max_length=length, nullable=bool(column["nullable"]))
            if actual != spec:
                problems.append(f"{table_name}.{name}: expected {spec}, found {actual}")
        return problems

    def audit(self) -> list[str]:
        """All inconsistencies between the live database and EXPECTED_SCHEMA. Empty means consistent."""
        missing = self.missing_tables()
        if missing:
            return [f"{name}: table missing" for name in missing]
        inspector = inspect(self.engine)
        problems: list[str] = []
        for table_name, expected in EXPECTED_SCHEMA.items():
            problems.extend(self.audit_table(inspector, table_name, expected))
        return problems

    # ------------------------------------------------------------------
    # Orchestration
    # ------------------------------------------------------------------

    def run(self) -> BootstrapResult:
        problems = self.audit()
        if problems:
            for problem in problems:
                logger.warning("Schema inconsistency: %s", problem)
            logger.warning("Schema does not match; rebuilding all identity tables. Existing data is discarded.")
            credentials = self.rebuild()
            return BootstrapResult(rebuilt=True, seeded=True, inconsistencies=problems, credentials=credentials)

        if self.reseed_when_no_admin and not self.has_admin_user():
            logger.warning("No active admin user found; reseeding.")
            return BootstrapResult(seeded=True, credentials=self.seed())

        logger.info("Schema audit passed; no bootstrap action needed.")
        return BootstrapResult()

    def rebuild(self) -> AdminCredentials:
        self.drop_tables()
        self.create_tables()
        return self.seed()

    def drop_tables(self) -> None:
        for table in reversed(TABLE_CREATION_ORDER):
            table.drop(self.engine, checkfirst=True)

    def create_tables(self) -> None:
        for table in TABLE_CREATION_ORDER:
            table.create(self.engine)

    def has_admin_user(self) -> bool:
        stmt = (
            select(users.c.id)
            .select_from(users.join(subjects, subjects.c.id == users.c.subject_id))
            .where(users.c.username == ADMIN_LOGIN, users.c.deleted == false(), subjects.c.deleted == false())
        )
        with self.engine.connect() as conn:
            return conn.execute(stmt).first() is not None

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------

    @staticmethod
    def _get_or_create(conn: Connection, table, match: dict, values: dict, now: str) -> int:
        """Return the id of the row matching `match`, creating or reactivating it."""
        criteria = [table.c[key] == value for key, value in match.items()]
        row = conn.execute(
            select(table.c.id, table.c.deleted).where(*criteria).order_by(table.c.deleted, table.c.id)
        ).first()
        if row is None:
            return conn.execute(
                table.insert().values(**match, **values, created_at=now, updated_at=now)
            ).inserted_primary_key[0]
        if row.deleted:
            conn.execute(table.update().where(table.c.id == row.id).values(deleted=False, updated_at=now))
        return row.id

    @staticmethod
    def _ensure_link(conn: Connection, table, now: str, **pair) -> None:
        criteria = [table.c[key] == value for key, value in pair.items()]
        if conn.execute(select(table.c.id).where(*criteria)).first() is None:
            conn.execute(table.insert().values(**pair, created_at=now, updated_at=now))

    @staticmethod
    def _restore_admin_subject(conn: Connection, subject_id: int, now: str) -> None:
        conn.execute(
            subjects.update()
            .where(subjects.c.id == subject_id)
            .values(deleted=False, name=ADMIN_SUBJECT_NAME, description=ADMIN_SUBJECT_DESCRIPTION, updated_at=now)
        )

    def seed(self) -> AdminCredentials:
        """Get-or-create every seed row and issue fresh admin credentials."""
        credentials = AdminCredentials(
            username=ADMIN_LOGIN,
            password=generate_secret(),
            client_id=generate_client_id(self.client_id_suffix),
            client_secret=generate_secret(),
        )
        password_hash = hash_password(credentials.password)
        encrypted_secret = encrypt_secret(credentials.client_secret, self.crypto_secret)
        now = _now_iso()

        with self.engine.begin() as conn:
            application_id = self._get_or_create(
                conn, applications, {"identifier": self.main_application_name}, {}, now
            )
            global_wildcard_id = None
            for resource_name in self.resource_names:
                resource_id = self._get_or_create(
                    conn, resources, {"resource_name": resource_name}, {"application_id": application_id}, now
                )
                for action in STANDARD_ACTIONS:
                    permission_id = self._get_or_create(
                        conn, permissions, {"resource_id": resource_id, "allowed": action}, {}, now
                    )
                    if resource_name == WILDCARD_RESOURCE and action == WILDCARD_ACTION:
                        global_wildcard_id = permission_id

            role_id = self._get_or_create(conn, roles, {"identifier": ADMIN_ROLE}, {}, now)
            self._ensure_link(conn, role_permissions, now, role_id=role_id, permission_id=global_wildcard_id)

            user_row = conn.execute(select(users).where(users.c.username == ADMIN_LOGIN)).first()
            if user_row is None:
                subject_id = conn.execute(
                    subjects.insert().values(
                        name=ADMIN_SUBJECT_NAME, description=ADMIN_SUBJECT_DESCRIPTION, created_at=now, updated_at=now
                    )
                ).inserted_primary_key[0]
                conn.execute(
                    users.insert().values(
                        username=ADMIN_LOGIN, password=password_hash, subject_id=subject_id, created_at=now, updated_at=now
                    )
                )
            else:
                subject_id = user_row.subject_id
                conn.execute(
                    users.update()
                    .where(users.c.id == user_row.id)
                    .values(password=password_hash, deleted=False, updated_at=now)
                )
                self._restore_admin_subject(conn, subject_id, now)
            self._ensure_link(conn, subject_roles, now, subject_id=subject_id, role_id=role_id)

            client_row = conn.execute(select(clients).where(clients.c.identifier == ADMIN_LOGIN)).first()
            if client_row is None:
                conn.execute(
                    clients.insert().values(
                        identifier=ADMIN_LOGIN,
                        client_id=credentials.client_id,
                        client_secret=encrypted_secret,
                        subject_id=subject_id,
                        created_at=now,
                        updated_at=now,
                    )
                )
            else:
                # Keep the public client_id stable; rotate everything secret.
                credentials.client_id = client_row.client_id
                conn.execute(
                    clients.update()
                    .where(clients.c.id == client_row.id)
                    .values(client_secret=encrypted_secret, access_token=None, revoked=False, deleted=False, updated_at=now)
                )
                if client_row.subject_id != subject_id:
                    self._restore_admin_subject(conn, client_row.subject_id, now)
                    self._ensure_link(conn, subject_roles, now, subject_id=client_row.subject_id, role_id=role_id)

            self._write_credentials(credentials)

        logger.info("Seeded admin user and client; credentials written to %s", self.credentials_path)
        return credentials

    def _write_credentials(self, credentials: AdminCredentials) -> None:
        fd = os.open(self.credentials_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(credentials.render())
        # O_CREAT's mode does not apply to a file that already existed.
        os.chmod(self.credentials_path, 0o600)
