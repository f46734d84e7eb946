"""
auth/store.py -- SQLAlchemy Core persistence layer for identity and permission entities.

Pattern: Repository + Data Mapper.
IdentityStore is the repository; _row_to_user / _row_to_client / ... are the
mappers. Route, guard and grant code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Transactions:
  Reads use engine.connect(). Every mutation runs inside one engine.begin()
  block, so a subject row, its concrete user/client row and its role links
  are written or rolled back together.

Soft delete:
  Entity rows are never removed; their deleted flag is set. Join rows
  (subject_roles, role_permissions) are hard-deleted by the diff operations.
  Every authorization read path filters deleted subjects, roles, permissions
  and resources.

Schema ownership:
  The store does not create tables. SchemaBootstrap (auth/bootstrap.py)
  audits and rebuilds them at startup, before the store serves queries.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone

from sqlalchemy import create_engine, event, false, func, select, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from auth.denormalize import build_resource_tree, build_role_tree, build_subject_tree
from auth.errors import ConflictError, InvalidRequestError, NotFoundError
from auth.models import (
    Application,
    Client,
    Page,
    Permission,
    Principal,
    ResourceNode,
    RoleNode,
    SubjectNode,
    SubjectType,
    User,
)
from auth.schema import (
    STANDARD_ACTIONS,
    applications,
    clients,
    permissions,
    resources,
    role_permissions,
    roles,
    subject_roles,
    subjects,
    users,
)

# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


def create_store_engine(db_url: str) -> Engine:
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _active(table):
    return table.c.deleted == false()


def _concrete(subject_type: SubjectType):
    return users if subject_type is SubjectType.USER else clients


def _page_bounds(page_index: int, items_per_page: int) -> tuple[int, int]:
    if page_index < 0 or items_per_page < 1:
        raise InvalidRequestError("page_index must be >= 0 and items_per_page >= 1")
    return items_per_page, page_index * items_per_page


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class IdentityStore:
    """Repository for subjects, roles, resources, permissions and applications.

    Usage:
        store = IdentityStore("sqlite:///gatehouse_auth.db")
        SchemaBootstrap(store.engine, ...).run()
        user = store.get_user_by_username("admin")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = create_store_engine(db_url)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Shared checks
    # ------------------------------------------------------------------

    @staticmethod
    def _require_active(conn: Connection, table, ids: Iterable[int], label: str) -> None:
        """Raise NotFoundError unless every id names a non-deleted row of table."""
        wanted = set(ids)
        if not wanted:
            return
        found = set(conn.execute(select(table.c.id).where(table.c.id.in_(wanted), _active(table))).scalars())
        missing = wanted - found
        if missing:
            raise NotFoundError(f"{label} not found: {sorted(missing)}")

    # ------------------------------------------------------------------
    # Applications
    # ------------------------------------------------------------------

    def create_application(self, identifier: str) -> Application:
        now = _now_iso()
        try:
            with self.engine.begin() as conn:
                existing = conn.execute(select(applications.c.id).where(applications.c.identifier == identifier)).first()
                if existing is not None:
                    raise ConflictError(f"Application {identifier!r} already exists")
                result = conn.execute(applications.insert().values(identifier=identifier, created_at=now, updated_at=now))
        except IntegrityError as exc:
            raise ConflictError(f"Application {identifier!r} already exists", original_error=exc) from exc
        return Application(identifier=identifier, id=result.inserted_primary_key[0], created_at=now)

    def list_applications(self) -> list[Application]:
        with self.engine.connect() as conn:
            rows = conn.execute(select(applications).where(_active(applications)).order_by(applications.c.id)).fetchall()
        return [_row_to_application(r) for r in rows]

    # ------------------------------------------------------------------
    # Resources and permissions
    # ------------------------------------------------------------------

    def create_resource(self, resource_name: str, application_id: int) -> ResourceNode:
        """Create a resource together with its five standard permissions.

        A soft-deleted resource of the same name is reactivated instead, with
        its standard permissions restored.
        """
        now = _now_iso()
        try:
            with self.engine.begin() as conn:
                self._require_active(conn, applications, [application_id], "Application")
                existing = conn.execute(select(resources).where(resources.c.resource_name == resource_name)).first()
                if existing is not None and not existing.deleted:
                    raise ConflictError(f"Resource {resource_name!r} already exists")
                if existing is not None:
                    resource_id = existing.id
                    conn.execute(
                        resources.update()
                        .where(resources.c.id == resource_id)
                        .values(deleted=False, application_id=application_id, updated_at=now)
                    )
                else:
                    resource_id = conn.execute(
                        resources.insert().values(
                            resource_name=resource_name, application_id=application_id, created_at=now, updated_at=now
                        )
                    ).inserted_primary_key[0]
                self._sync_actions(conn, resource_id, STANDARD_ACTIONS, now, remove_others=False)
        except IntegrityError as exc:
            raise ConflictError(f"Resource {resource_name!r} already exists", original_error=exc) from exc
        return self.get_resource(resource_id)

    def get_resource(self, resource_id: int) -> ResourceNode | None:
        with self.engine.connect() as conn:
            rows = self._resource_rows(conn, resources.c.id == resource_id)
        tree = build_resource_tree(rows)
        return tree[0] if tree else None

    def list_resources(self, page_index: int = 0, items_per_page: int = 5) -> Page:
        limit, offset = _page_bounds(page_index, items_per_page)
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(resources).where(_active(resources))).scalar_one()
            ids = list(
                conn.execute(
                    select(resources.c.id).where(_active(resources)).order_by(resources.c.id).limit(limit).offset(offset)
                ).scalars()
            )
            rows = self._resource_rows(conn, resources.c.id.in_(ids)) if ids else []
        return Page(build_resource_tree(rows), page_index, items_per_page, total)

    @staticmethod
    def _resource_rows(conn: Connection, condition) -> list[dict]:
        joined = resources.outerjoin(
            permissions, (permissions.c.resource_id == resources.c.id) & _active(permissions)
        )
        stmt = (
            select(
                resources.c.id.label("resource_id"),
                resources.c.resource_name,
                permissions.c.id.label("permission_id"),
                permissions.c.allowed,
            )
            .select_from(joined)
            .where(condition, _active(resources))
            .order_by(resources.c.id, permissions.c.id)
        )
        return [dict(row._mapping) for row in conn.execute(stmt)]

    @staticmethod
    def _sync_actions(conn: Connection, resource_id: int, actions: Iterable[str], now: str, remove_others: bool) -> None:
        """Make the resource's active permission set contain `actions`.

        Soft-deleted permissions are reactivated rather than duplicated. With
        remove_others, active permissions not listed are soft-deleted.
        """
        wanted = list(dict.fromkeys(actions))
        existing = conn.execute(
            select(permissions.c.id, permissions.c.allowed, permissions.c.deleted).where(
                permissions.c.resource_id == resource_id
            )
        ).fetchall()
        active = {row.allowed for row in existing if not row.deleted}

        if remove_others:
            stale = [row.id for row in existing if not row.deleted and row.allowed not in wanted]
            if stale:
                conn.execute(permissions.update().where(permissions.c.id.in_(stale)).values(deleted=True, updated_at=now))

        for action in wanted:
            if action in active:
                continue
            dead = next((row for row in existing if row.deleted and row.allowed == action), None)
            if dead is not None:
                conn.execute(permissions.update().where(permissions.c.id == dead.id).values(deleted=False, updated_at=now))
            else:
                conn.execute(
                    permissions.insert().values(allowed=action, resource_id=resource_id, created_at=now, updated_at=now)
                )

    def update_resource_permissions(self, resource_id: int, actions: list[str]) -> ResourceNode:
        """Diff the resource's permission set against `actions`."""
        now = _now_iso()
        with self.engine.begin() as conn:
            self._require_active(conn, resources, [resource_id], "Resource")
            self._sync_actions(conn, resource_id, actions, now, remove_others=True)
        return self.get_resource(resource_id)

    def delete_resource(self, resource_id: int) -> bool:
        """Soft-delete a resource and its permissions. False if not found."""
        now = _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                resources.update().where(resources.c.id == resource_id, _active(resources)).values(deleted=True, updated_at=now)
            )
            if result.rowcount == 0:
                return False
            conn.execute(
                permissions.update().where(permissions.c.resource_id == resource_id).values(deleted=True, updated_at=now)
            )
        return True

    def create_permission(self, resource_id: int, allowed: str) -> Permission:
        """Add one action to a resource.

        (resource, allowed) is unique among active permissions; a soft-deleted
        duplicate is reactivated.
        """
        now = _now_iso()
        with self.engine.begin() as conn:
            self._require_active(conn, resources, [resource_id], "Resource")
            rows = conn.execute(
                select(permissions).where(permissions.c.resource_id == resource_id, permissions.c.allowed == allowed)
            ).fetchall()
            if any(not row.deleted for row in rows):
                raise ConflictError(f"Permission {allowed!r} already exists on resource {resource_id}")
            if rows:
                permission_id = rows[0].id
                conn.execute(
                    permissions.update().where(permissions.c.id == permission_id).values(deleted=False, updated_at=now)
                )
            else:
                permission_id = conn.execute(
                    permissions.insert().values(allowed=allowed, resource_id=resource_id, created_at=now, updated_at=now)
                ).inserted_primary_key[0]
        return Permission(resource_id=resource_id, allowed=allowed, id=permission_id)

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def create_role(self, identifier: str, permission_ids: list[int]) -> RoleNode:
        """Create a role with the given permission links.

        A soft-deleted role of the same identifier is reactivated instead, like
        create_resource. It comes back with exactly the requested permissions
        and no holders: subjects that had it before must be reassigned.
        """
        now = _now_iso()
        try:
            with self.engine.begin() as conn:
                existing = conn.execute(select(roles.c.id, roles.c.deleted).where(roles.c.identifier == identifier)).first()
                if existing is not None and not existing.deleted:
                    raise ConflictError(f"Role {identifier!r} already exists")
                self._require_active(conn, permissions, permission_ids, "Permission")
                if existing is not None:
                    role_id = existing.id
                    conn.execute(roles.update().where(roles.c.id == role_id).values(deleted=False, updated_at=now))
                    conn.execute(subject_roles.delete().where(subject_roles.c.role_id == role_id))
                    self._diff_links(conn, role_permissions, "role_id", role_id, "permission_id", set(permission_ids), now)
                else:
                    role_id = conn.execute(
                        roles.insert().values(identifier=identifier, created_at=now, updated_at=now)
                    ).inserted_primary_key[0]
                    self._link(conn, role_permissions, "role_id", role_id, "permission_id", set(permission_ids), now)
        except IntegrityError as exc:
            raise ConflictError(f"Role {identifier!r} already exists", original_error=exc) from exc
        return self.get_role(role_id)

    def get_role(self, role_id: int) -> RoleNode | None:
        with self.engine.connect() as conn:
            rows = self._role_rows(conn, roles.c.id == role_id)
        tree = build_role_tree(rows)
        return tree[0] if tree else None

    def list_roles(self, page_index: int = 0, items_per_page: int = 5) -> Page:
        limit, offset = _page_bounds(page_index, items_per_page)
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(roles).where(_active(roles))).scalar_one()
            ids = list(
                conn.execute(select(roles.c.id).where(_active(roles)).order_by(roles.c.id).limit(limit).offset(offset)).scalars()
            )
            rows = self._role_rows(conn, roles.c.id.in_(ids)) if ids else []
        return Page(build_role_tree(rows), page_index, items_per_page, total)

    @staticmethod
    def _role_rows(conn: Connection, condition) -> list[dict]:
        joined = (
            roles.outerjoin(role_permissions, role_permissions.c.role_id == roles.c.id)
            .outerjoin(permissions, (permissions.c.id == role_permissions.c.permission_id) & _active(permissions))
            .outerjoin(resources, (resources.c.id == permissions.c.resource_id) & _active(resources))
        )
        stmt = (
            select(
                roles.c.id,
                roles.c.identifier,
                resources.c.id.label("resource_id"),
                resources.c.resource_name,
                permissions.c.id.label("permission_id"),
                permissions.c.allowed,
            )
            .select_from(joined)
            .where(condition, _active(roles))
            .order_by(roles.c.id, permissions.c.id)
        )
        return [dict(row._mapping) for row in conn.execute(stmt)]

    def delete_role(self, role_id: int) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                roles.update().where(roles.c.id == role_id, _active(roles)).values(deleted=True, updated_at=_now_iso())
            )
        return result.rowcount > 0

    def update_role_permissions(self, role_id: int, permission_ids: list[int]) -> RoleNode:
        """Replace the role's permission links: stale links deleted, new ones inserted."""
        now = _now_iso()
        with self.engine.begin() as conn:
            self._require_active(conn, roles, [role_id], "Role")
            self._require_active(conn, permissions, permission_ids, "Permission")
            self._diff_links(conn, role_permissions, "role_id", role_id, "permission_id", set(permission_ids), now)
        return self.get_role(role_id)

    # ------------------------------------------------------------------
    # Join-table helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _link(conn: Connection, table, owner_col: str, owner_id: int, target_col: str, targets: set, now: str) -> None:
        if targets:
            conn.execute(
                table.insert(),
                [{owner_col: owner_id, target_col: t, "created_at": now, "updated_at": now} for t in sorted(targets)],
            )

    @classmethod
    def _diff_links(cls, conn: Connection, table, owner_col: str, owner_id: int, target_col: str, wanted: set, now: str) -> None:
        owner = table.c[owner_col]
        target = table.c[target_col]
        current = set(conn.execute(select(target).where(owner == owner_id)).scalars())
        stale = current - wanted
        if stale:
            conn.execute(table.delete().where(owner == owner_id, target.in_(stale)))
        cls._link(conn, table, owner_col, owner_id, target_col, wanted - current, now)

    # ------------------------------------------------------------------
    # Subjects: creation
    # ------------------------------------------------------------------

    @staticmethod
    def _insert_subject(conn: Connection, name: str, description: str | None, now: str) -> int:
        return conn.execute(
            subjects.insert().values(name=name, description=description, created_at=now, updated_at=now)
        ).inserted_primary_key[0]

    @staticmethod
    def _require_roles(role_ids: list[int]) -> set[int]:
        wanted = set(role_ids)
        if not wanted:
            raise InvalidRequestError("A subject must be created with at least one role", 400003)
        return wanted

    def create_user(
        self,
        username: str,
        password_hash: str,
        name: str,
        role_ids: list[int],
        description: str | None = None,
    ) -> User:
        """Create subject + user + role links in one transaction. Username is lower-cased."""
        username = username.lower()
        wanted = self._require_roles(role_ids)
        now = _now_iso()
        try:
            with self.engine.begin() as conn:
                if conn.execute(select(users.c.id).where(users.c.username == username)).first() is not None:
                    raise ConflictError(f"User {username!r} already exists")
                self._require_active(conn, roles, wanted, "Role")
                subject_id = self._insert_subject(conn, name, description, now)
                user_id = conn.execute(
                    users.insert().values(
                        username=username, password=password_hash, subject_id=subject_id, created_at=now, updated_at=now
                    )
                ).inserted_primary_key[0]
                self._link(conn, subject_roles, "subject_id", subject_id, "role_id", wanted, now)
        except IntegrityError as exc:
            raise ConflictError(f"User {username!r} already exists", original_error=exc) from exc
        return User(
            username=username,
            subject_id=subject_id,
            hashed_password=password_hash,
            id=user_id,
            name=name,
            description=description,
        )

    def create_client(
        self,
        identifier: str,
        client_id: str,
        encrypted_secret: str,
        name: str,
        role_ids: list[int],
        description: str | None = None,
        access_token_hash: str | None = None,
    ) -> Client:
        """Create subject + client + role links in one transaction. Identifier is lower-cased."""
        identifier = identifier.lower()
        wanted = self._require_roles(role_ids)
        now = _now_iso()
        try:
            with self.engine.begin() as conn:
                if conn.execute(select(clients.c.id).where(clients.c.identifier == identifier)).first() is not None:
                    raise ConflictError(f"Client {identifier!r} already exists")
                self._require_active(conn, roles, wanted, "Role")
                subject_id = self._insert_subject(conn, name, description, now)
                client_pk = conn.execute(
                    clients.insert().values(
                        identifier=identifier,
                        client_id=client_id,
                        client_secret=encrypted_secret,
                        access_token=access_token_hash,
                        subject_id=subject_id,
                        created_at=now,
                        updated_at=now,
                    )
                ).inserted_primary_key[0]
                self._link(conn, subject_roles, "subject_id", subject_id, "role_id", wanted, now)
        except IntegrityError as exc:
            raise ConflictError(f"Client {identifier!r} already exists", original_error=exc) from exc
        return Client(
            identifier=identifier,
            subject_id=subject_id,
            client_id=client_id,
            client_secret=encrypted_secret,
            id=client_pk,
            access_token=access_token_hash,
            name=name,
            description=description,
        )

    # ------------------------------------------------------------------
    # Subjects: single-record lookups (deleted rows included, callers check is_active)
    # ------------------------------------------------------------------

    @staticmethod
    def _record_select(subject_type: SubjectType):
        concrete = _concrete(subject_type)
        return select(
            concrete,
            subjects.c.name,
            subjects.c.description,
            subjects.c.deleted.label("subject_deleted"),
        ).select_from(concrete.join(subjects, subjects.c.id == concrete.c.subject_id))

    def _fetch_user(self, condition) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(self._record_select(SubjectType.USER).where(condition)).fetchone()
        return _row_to_user(row) if row is not None else None

    def _fetch_client(self, condition) -> Client | None:
        with self.engine.connect() as conn:
            row = conn.execute(self._record_select(SubjectType.CLIENT).where(condition)).fetchone()
        return _row_to_client(row) if row is not None else None

    def get_user(self, subject_id: int) -> User | None:
        return self._fetch_user(users.c.subject_id == subject_id)

    def get_user_by_username(self, username: str) -> User | None:
        """Look up a user by username (case-insensitive: usernames are stored lower-cased)."""
        return self._fetch_user(users.c.username == username.lower())

    def get_client(self, subject_id: int) -> Client | None:
        return self._fetch_client(clients.c.subject_id == subject_id)

    def get_client_by_client_id(self, client_id: str) -> Client | None:
        return self._fetch_client(clients.c.client_id == client_id)

    def get_subject_record(self, principal: Principal) -> User | Client | None:
        """Return the concrete row behind a token's subject, dispatching on its type once."""
        if principal.subject_type is SubjectType.USER:
            return self.get_user(principal.subject_id)
        return self.get_client(principal.subject_id)

    # ------------------------------------------------------------------
    # Subjects: trees and listings
    # ------------------------------------------------------------------

    @staticmethod
    def _subject_rows(conn: Connection, subject_type: SubjectType, condition) -> list[dict]:
        """Flat subject x role x permission x resource rows, ordered for build_subject_tree.

        Deleted subjects are excluded; deleted roles come through flagged
        (role_deleted) with no permissions; deleted permissions and resources
        are filtered in the join conditions.
        """
        concrete = _concrete(subject_type)
        login = users.c.username if subject_type is SubjectType.USER else clients.c.identifier
        columns = [
            concrete.c.id,
            concrete.c.subject_id,
            subjects.c.name,
            subjects.c.description,
            login.label("login"),
            roles.c.id.label("role_id"),
            roles.c.identifier.label("role_identifier"),
            roles.c.deleted.label("role_deleted"),
            resources.c.id.label("resource_id"),
            resources.c.resource_name,
            permissions.c.id.label("permission_id"),
            permissions.c.allowed,
        ]
        if subject_type is SubjectType.CLIENT:
            columns += [clients.c.client_id, clients.c.access_token, clients.c.revoked]

        joined = (
            concrete.join(subjects, subjects.c.id == concrete.c.subject_id)
            .outerjoin(subject_roles, subject_roles.c.subject_id == subjects.c.id)
            .outerjoin(roles, roles.c.id == subject_roles.c.role_id)
            .outerjoin(role_permissions, (role_permissions.c.role_id == roles.c.id) & _active(roles))
            .outerjoin(permissions, (permissions.c.id == role_permissions.c.permission_id) & _active(permissions))
            .outerjoin(resources, (resources.c.id == permissions.c.resource_id) & _active(resources))
        )
        stmt = (
            select(*columns)
            .select_from(joined)
            .where(condition, _active(concrete), _active(subjects))
            .order_by(concrete.c.id, roles.c.id, permissions.c.id)
        )
        return [dict(row._mapping) for row in conn.execute(stmt)]

    def get_subject_permission_rows(self, principal: Principal) -> list[dict]:
        """Permission rows for one active subject; empty if deleted or unknown."""
        concrete = _concrete(principal.subject_type)
        with self.engine.connect() as conn:
            return self._subject_rows(conn, principal.subject_type, concrete.c.subject_id == principal.subject_id)

    def get_subject_tree(self, subject_type: SubjectType, subject_id: int) -> SubjectNode | None:
        tree = build_subject_tree(
            self.get_subject_permission_rows(Principal(subject_id, subject_type, "")), subject_type
        )
        return tree[0] if tree else None

    def list_subjects(self, subject_type: SubjectType, page_index: int = 0, items_per_page: int = 5) -> Page:
        """One page of active users or clients with their role trees.

        Subject ids are paginated first and rows joined afterwards, so a page
        never splits one subject's rows.
        """
        limit, offset = _page_bounds(page_index, items_per_page)
        concrete = _concrete(subject_type)
        base = concrete.join(subjects, subjects.c.id == concrete.c.subject_id)
        active = _active(concrete) & _active(subjects)
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(base).where(active)).scalar_one()
            ids = list(
                conn.execute(
                    select(concrete.c.id).select_from(base).where(active).order_by(concrete.c.id).limit(limit).offset(offset)
                ).scalars()
            )
            rows = self._subject_rows(conn, subject_type, concrete.c.id.in_(ids)) if ids else []
        return Page(build_subject_tree(rows, subject_type), page_index, items_per_page, total)

    def get_login_rows(self, username: str) -> list[dict]:
        """User x role-identifier rows for the password grant.

        One row per active role (a single row with role_identifier None when the
        user holds none). Empty for unknown or deleted users.
        """
        joined = (
            users.join(subjects, subjects.c.id == users.c.subject_id)
            .outerjoin(subject_roles, subject_roles.c.subject_id == subjects.c.id)
            .outerjoin(roles, (roles.c.id == subject_roles.c.role_id) & _active(roles))
        )
        stmt = (
            select(
                users.c.id,
                users.c.subject_id,
                users.c.username,
                users.c.password,
                subjects.c.name,
                subjects.c.description,
                roles.c.identifier.label("role_identifier"),
            )
            .select_from(joined)
            .where(users.c.username == username.lower(), _active(users), _active(subjects))
            .order_by(users.c.id, roles.c.id)
        )
        with self.engine.connect() as conn:
            return [dict(row._mapping) for row in conn.execute(stmt)]

    # ------------------------------------------------------------------
    # Subjects: updates
    # ------------------------------------------------------------------

    def update_subject(self, subject_id: int, name: str | None = None, description: str | None = None) -> bool:
        """Update the shared name/description. Returns False if the subject is unknown or deleted."""
        fields: dict = {}
        if name is not None:
            fields["name"] = name
        if description is not None:
            fields["description"] = description
        with self.engine.begin() as conn:
            result = conn.execute(
                subjects.update()
                .where(subjects.c.id == subject_id, _active(subjects))
                .values(updated_at=_now_iso(), **fields)
            )
        return result.rowcount > 0

    def update_password(self, subject_id: int, password_hash: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                users.update()
                .where(users.c.subject_id == subject_id, _active(users))
                .values(password=password_hash, updated_at=_now_iso())
            )
        return result.rowcount > 0

    def update_subject_roles(self, subject_id: int, role_ids: list[int]) -> None:
        """Replace the subject's role links. The new set must be non-empty."""
        wanted = self._require_roles(role_ids)
        now = _now_iso()
        with self.engine.begin() as conn:
            self._require_active(conn, subjects, [subject_id], "Subject")
            self._require_active(conn, roles, wanted, "Role")
            self._diff_links(conn, subject_roles, "subject_id", subject_id, "role_id", wanted, now)

    def delete_subject(self, subject_type: SubjectType, subject_id: int) -> bool:
        """Soft-delete the subject row and its concrete row together. False if not found."""
        concrete = _concrete(subject_type)
        now = _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                concrete.update()
                .where(concrete.c.subject_id == subject_id, _active(concrete))
                .values(deleted=True, updated_at=now)
            )
            if result.rowcount == 0:
                return False
            conn.execute(subjects.update().where(subjects.c.id == subject_id).values(deleted=True, updated_at=now))
        return True

    # ------------------------------------------------------------------
    # Client credentials
    # ------------------------------------------------------------------

    def set_client_access_token(self, subject_id: int, token_hash: str | None) -> bool:
        """Store (or with None, clear) the long-lived token hash."""
        with self.engine.begin() as conn:
            result = conn.execute(
                clients.update()
                .where(clients.c.subject_id == subject_id, _active(clients))
                .values(access_token=token_hash, updated_at=_now_iso())
            )
        return result.rowcount > 0

    def set_client_revoked(self, subject_id: int, revoked: bool) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                clients.update()
                .where(clients.c.subject_id == subject_id, _active(clients))
                .values(revoked=revoked, updated_at=_now_iso())
            )
        return result.rowcount > 0


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_application(row) -> Application:
    return Application(identifier=row.identifier, id=row.id, deleted=bool(row.deleted), created_at=row.created_at)


def _row_to_user(row) -> User:
    return User(
        username=row.username,
        subject_id=row.subject_id,
        hashed_password=row.password,
        id=row.id,
        name=row.name,
        description=row.description,
        deleted=bool(row.deleted),
        subject_deleted=bool(row.subject_deleted),
    )


def _row_to_client(row) -> Client:
    return Client(
        identifier=row.identifier,
        subject_id=row.subject_id,
        client_id=row.client_id,
        client_secret=row.client_secret,
        id=row.id,
        access_token=row.access_token,
        revoked=bool(row.revoked),
        name=row.name,
        description=row.description,
        deleted=bool(row.deleted),
        subject_deleted=bool(row.subject_deleted),
    )
