from __future__ import annotations

import contextlib
import json
from typing import Any, Dict, Iterator, List, Optional, Tuple

from psycopg import Connection, OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from warden.logging import get_logger
from warden.storage.errors import ConstraintViolation, StoreUnavailable
from warden.storage.models import (
    Permission,
    Person,
    PersonServiceRole,
    Role,
    RolePermission,
    Service,
    ServiceRole,
    TokenCacheEntry,
)

_REQUIRED_TABLES = [
    "person",
    "role",
    "permission",
    "services",
    "role_permission",
    "service_roles",
    "person_service_role",
    "tokens_cache",
]


class PostgresStore:
    """Postgres-backed directory and token cache (schema ``auth``)."""

    def __init__(
        self,
        dsn: str,
        *,
        timeout_seconds: float = 2.0,
        min_size: int = 2,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.timeout_seconds = timeout_seconds
        self.logger = get_logger(__name__)
        statement_timeout_ms = max(1, int(timeout_seconds * 1000))
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )
        self._verify_required_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Connection]:
        try:
            with self.pool.connection(timeout=self.timeout_seconds) as conn:
                yield conn
        except (PoolTimeout, OperationalError) as exc:
            # QueryCanceled (statement_timeout) is an OperationalError too
            self.logger.error(
                "postgres_unavailable", error_type=type(exc).__name__, error=str(exc)
            )
            raise StoreUnavailable(
                "database unavailable", {"error_type": type(exc).__name__}
            ) from exc

    def _verify_required_schema(self) -> None:
        """Ensure the auth schema exists before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"auth.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _person_from_row(row: Dict[str, Any]) -> Person:
        return Person(
            id=row["id"],
            username=row["username"],
            name=row["name"],
            password_hash=row["password_hash"],
            document_number=row["document_number"],
            person_type=str(row.get("person_type") or "N"),
            document_type=str(row.get("document_type") or "DNI"),
            created_at=row.get("created_at") or 0,
            updated_at=row.get("updated_at") or 0,
            removed_at=row.get("removed_at"),
        )

    @staticmethod
    def _role_from_row(row: Dict[str, Any]) -> Role:
        return Role(
            id=row["id"],
            name=row["name"],
            created_at=row.get("created_at") or 0,
            updated_at=row.get("updated_at") or 0,
        )

    @staticmethod
    def _permission_from_row(row: Dict[str, Any]) -> Permission:
        return Permission(
            id=row["id"],
            name=row["name"],
            created_at=row.get("created_at") or 0,
            updated_at=row.get("updated_at") or 0,
        )

    @staticmethod
    def _service_from_row(row: Dict[str, Any]) -> Service:
        return Service(
            id=row["id"],
            name=row["name"],
            description=row.get("description"),
            status=bool(row.get("status", True)),
            created_at=row.get("created_at") or 0,
            updated_at=row.get("updated_at") or 0,
        )

    @staticmethod
    def _token_from_row(row: Dict[str, Any]) -> TokenCacheEntry:
        payload = row["payload"]
        if isinstance(payload, str):
            payload = json.loads(payload)
        return TokenCacheEntry(
            token=row["token"], payload=payload, last_activity=int(row["last_activity"])
        )

    # people
    def create_person(
        self,
        username: str,
        name: str,
        password_hash: str,
        document_number: str,
        *,
        person_type: str = "N",
        document_type: str = "DNI",
    ) -> Person:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth.person
                        (username, password_hash, name, person_type, document_type, document_number)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (username, password_hash, name, person_type, document_type, document_number),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "person already exists",
                {"constraint": getattr(exc.diag, "constraint_name", None)},
            )
        return self._person_from_row(row)

    def get_person(self, person_id: int, *, include_removed: bool = False) -> Optional[Person]:
        query = "SELECT * FROM auth.person WHERE id = %s"
        if not include_removed:
            query += " AND removed_at IS NULL"
        with self._connect() as conn:
            row = conn.execute(query, (person_id,)).fetchone()
        return self._person_from_row(row) if row else None

    def get_person_by_username(self, username: str) -> Optional[Person]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth.person WHERE username = %s AND removed_at IS NULL",
                (username,),
            ).fetchone()
        return self._person_from_row(row) if row else None

    def list_people(self, limit: int = 100) -> List[Person]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth.person WHERE removed_at IS NULL ORDER BY id LIMIT %s",
                (limit,),
            ).fetchall()
        return [self._person_from_row(row) for row in rows]

    def update_person(
        self,
        person_id: int,
        *,
        username: Optional[str] = None,
        name: Optional[str] = None,
        password_hash: Optional[str] = None,
    ) -> Optional[Person]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE auth.person
                    SET username = COALESCE(%s, username),
                        name = COALESCE(%s, name),
                        password_hash = COALESCE(%s, password_hash)
                    WHERE id = %s AND removed_at IS NULL
                    RETURNING *
                    """,
                    (username, name, password_hash, person_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("username already exists", {"field": "username"})
        return self._person_from_row(row) if row else None

    def remove_person(self, person_id: int, removed_at: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth.person SET removed_at = %s WHERE id = %s AND removed_at IS NULL",
                (removed_at, person_id),
            )
            return cur.rowcount > 0

    # roles
    def create_role(self, name: str) -> Role:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO auth.role (name) VALUES (%s) RETURNING *", (name,)
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("role already exists", {"field": "name"})
        return self._role_from_row(row)

    def get_role(self, role_id: int) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM auth.role WHERE id = %s", (role_id,)).fetchone()
        return self._role_from_row(row) if row else None

    def list_roles(self) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM auth.role ORDER BY id").fetchall()
        return [self._role_from_row(row) for row in rows]

    def update_role(self, role_id: int, name: str) -> Optional[Role]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "UPDATE auth.role SET name = %s WHERE id = %s RETURNING *",
                    (name, role_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("role already exists", {"field": "name"})
        return self._role_from_row(row) if row else None

    def delete_role(self, role_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth.role WHERE id = %s", (role_id,))
            return cur.rowcount > 0

    # permissions
    def create_permission(self, name: str) -> Permission:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO auth.permission (name) VALUES (%s) RETURNING *", (name,)
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("permission already exists", {"field": "name"})
        return self._permission_from_row(row)

    def get_permission(self, permission_id: int) -> Optional[Permission]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth.permission WHERE id = %s", (permission_id,)
            ).fetchone()
        return self._permission_from_row(row) if row else None

    def list_permissions(self) -> List[Permission]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM auth.permission ORDER BY id").fetchall()
        return [self._permission_from_row(row) for row in rows]

    def update_permission(self, permission_id: int, name: str) -> Optional[Permission]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "UPDATE auth.permission SET name = %s WHERE id = %s RETURNING *",
                    (name, permission_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("permission already exists", {"field": "name"})
        return self._permission_from_row(row) if row else None

    def delete_permission(self, permission_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth.permission WHERE id = %s", (permission_id,))
            return cur.rowcount > 0

    # services
    def create_service(
        self, name: str, description: Optional[str] = None, *, status: bool = True
    ) -> Service:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth.services (name, description, status)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (name, description, status),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("service already exists", {"field": "name"})
        return self._service_from_row(row)

    def get_service(self, service_id: int) -> Optional[Service]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth.services WHERE id = %s", (service_id,)
            ).fetchone()
        return self._service_from_row(row) if row else None

    def get_service_by_name(self, name: str) -> Optional[Service]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth.services WHERE name = %s", (name,)
            ).fetchone()
        return self._service_from_row(row) if row else None

    def list_services(self, *, include_inactive: bool = False) -> List[Service]:
        query = "SELECT * FROM auth.services"
        if not include_inactive:
            query += " WHERE status = TRUE"
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY id").fetchall()
        return [self._service_from_row(row) for row in rows]

    def update_service(
        self,
        service_id: int,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        status: Optional[bool] = None,
    ) -> Optional[Service]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE auth.services
                    SET name = COALESCE(%s, name),
                        description = COALESCE(%s, description),
                        status = COALESCE(%s, status)
                    WHERE id = %s
                    RETURNING *
                    """,
                    (name, description, status, service_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("service already exists", {"field": "name"})
        return self._service_from_row(row) if row else None

    def disable_service(self, service_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth.services SET status = FALSE WHERE id = %s", (service_id,)
            )
            return cur.rowcount > 0

    # assignment edges
    def assign_permission_to_role(self, role_id: int, permission_id: int) -> RolePermission:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth.role_permission (role_id, permission_id)
                    VALUES (%s, %s)
                    ON CONFLICT (role_id, permission_id) DO NOTHING
                    """,
                    (role_id, permission_id),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "referenced record does not exist",
                {"role_id": role_id, "permission_id": permission_id},
            )
        return RolePermission(role_id=role_id, permission_id=permission_id)

    def remove_permission_from_role(self, role_id: int, permission_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM auth.role_permission WHERE role_id = %s AND permission_id = %s",
                (role_id, permission_id),
            )
            return cur.rowcount > 0

    def list_role_permissions(self, role_id: int) -> List[Permission]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT p.* FROM auth.permission p
                JOIN auth.role_permission rp ON rp.permission_id = p.id
                WHERE rp.role_id = %s
                ORDER BY p.id
                """,
                (role_id,),
            ).fetchall()
        return [self._permission_from_row(row) for row in rows]

    def assign_role_to_service(self, service_id: int, role_id: int) -> ServiceRole:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth.service_roles (service_id, role_id)
                    VALUES (%s, %s)
                    ON CONFLICT (service_id, role_id) DO NOTHING
                    """,
                    (service_id, role_id),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "referenced record does not exist",
                {"service_id": service_id, "role_id": role_id},
            )
        return ServiceRole(service_id=service_id, role_id=role_id)

    def remove_role_from_service(self, service_id: int, role_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM auth.service_roles WHERE service_id = %s AND role_id = %s",
                (service_id, role_id),
            )
            return cur.rowcount > 0

    def list_service_roles(self, service_id: int) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT r.* FROM auth.role r
                JOIN auth.service_roles sr ON sr.role_id = r.id
                WHERE sr.service_id = %s
                ORDER BY r.id
                """,
                (service_id,),
            ).fetchall()
        return [self._role_from_row(row) for row in rows]

    def assign_role_to_person(
        self, person_id: int, service_id: int, role_id: int
    ) -> PersonServiceRole:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth.person_service_role (person_id, service_id, role_id)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (person_id, service_id, role_id) DO NOTHING
                    """,
                    (person_id, service_id, role_id),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "referenced record does not exist",
                {"person_id": person_id, "service_id": service_id, "role_id": role_id},
            )
        return PersonServiceRole(person_id=person_id, service_id=service_id, role_id=role_id)

    def remove_role_from_person(self, person_id: int, service_id: int, role_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM auth.person_service_role
                WHERE person_id = %s AND service_id = %s AND role_id = %s
                """,
                (person_id, service_id, role_id),
            )
            return cur.rowcount > 0

    def list_person_roles_in_service(self, person_id: int, service_id: int) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT r.* FROM auth.role r
                JOIN auth.person_service_role psr ON psr.role_id = r.id
                WHERE psr.person_id = %s AND psr.service_id = %s
                ORDER BY r.id
                """,
                (person_id, service_id),
            ).fetchall()
        return [self._role_from_row(row) for row in rows]

    def list_people_with_role_in_service(self, service_id: int, role_id: int) -> List[Person]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT p.* FROM auth.person p
                JOIN auth.person_service_role psr ON psr.person_id = p.id
                WHERE psr.service_id = %s AND psr.role_id = %s AND p.removed_at IS NULL
                ORDER BY p.id
                """,
                (service_id, role_id),
            ).fetchall()
        return [self._person_from_row(row) for row in rows]

    def list_person_service_roles(self, person_id: int) -> List[Tuple[Service, Role]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT s.id AS service_id, s.name AS service_name,
                       s.description AS service_description, s.status AS service_status,
                       r.id AS role_id, r.name AS role_name
                FROM auth.person_service_role psr
                JOIN auth.services s ON s.id = psr.service_id
                JOIN auth.role r ON r.id = psr.role_id
                WHERE psr.person_id = %s
                ORDER BY s.id, r.id
                """,
                (person_id,),
            ).fetchall()
        return [
            (
                Service(
                    id=row["service_id"],
                    name=row["service_name"],
                    description=row["service_description"],
                    status=bool(row["service_status"]),
                ),
                Role(id=row["role_id"], name=row["role_name"]),
            )
            for row in rows
        ]

    def list_services_of_person(self, person_id: int) -> List[Service]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT s.* FROM auth.services s
                JOIN auth.person_service_role psr ON psr.service_id = s.id
                WHERE psr.person_id = %s AND s.status = TRUE
                ORDER BY s.id
                """,
                (person_id,),
            ).fetchall()
        return [self._service_from_row(row) for row in rows]

    def person_has_permission(
        self, person_id: int, service_id: int, permission_name: str
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT EXISTS (
                    SELECT 1
                    FROM auth.person_service_role psr
                    JOIN auth.services s ON s.id = psr.service_id
                    JOIN auth.role_permission rp ON rp.role_id = psr.role_id
                    JOIN auth.permission p ON p.id = rp.permission_id
                    WHERE psr.person_id = %s
                      AND psr.service_id = %s
                      AND s.status = TRUE
                      AND p.name = %s
                ) AS allowed
                """,
                (person_id, service_id, permission_name),
            ).fetchone()
        return bool(row and row["allowed"])

    # token cache
    def insert_token(self, entry: TokenCacheEntry) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO auth.tokens_cache (token, payload, last_activity)
                VALUES (%s, %s, %s)
                ON CONFLICT (token) DO NOTHING
                """,
                (entry.token, json.dumps(entry.payload), entry.last_activity),
            )
            return cur.rowcount == 1

    def get_token(self, token: str) -> Optional[TokenCacheEntry]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT token, payload, last_activity FROM auth.tokens_cache WHERE token = %s",
                (token,),
            ).fetchone()
        return self._token_from_row(row) if row else None

    def renew_token(
        self, token: str, now: int, *, min_idle: int, max_idle: int
    ) -> Optional[TokenCacheEntry]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth.tokens_cache
                SET last_activity = %s
                WHERE token = %s AND %s - last_activity BETWEEN %s AND %s
                RETURNING token, payload, last_activity
                """,
                (now, token, now, min_idle, max_idle),
            ).fetchone()
        return self._token_from_row(row) if row else None

    def delete_token(self, token: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth.tokens_cache WHERE token = %s", (token,))
            return cur.rowcount > 0

    def delete_token_if_expired(self, token: str, now: int, ttl_seconds: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM auth.tokens_cache WHERE token = %s AND %s - last_activity > %s",
                (token, now, ttl_seconds),
            )
            return cur.rowcount > 0

    def delete_expired(self, now: int, ttl_seconds: int) -> int:
        # range predicate on last_activity so the index drives the sweep
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM auth.tokens_cache WHERE last_activity < %s",
                (now - ttl_seconds,),
            )
            return cur.rowcount

    def delete_user_tokens(self, user_id: int) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM auth.tokens_cache WHERE payload ->> 'user_id' = %s",
                (str(user_id),),
            )
            return cur.rowcount
