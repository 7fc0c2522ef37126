"""
Async Postgres store: orders (current state + version) and audit_events (append-only log).
A transition is one transaction: compare-and-set the order row on its version, then insert the event.
"""
import asyncio
import json
import logging
from contextlib import contextmanager
from datetime import datetime

import asyncpg
from asyncpg.exceptions import ForeignKeyViolationError, LockNotAvailableError, UniqueViolationError

from order_lifecycle.config import settings
from order_lifecycle.errors import (
    Busy,
    DuplicateIdempotencyKey,
    LifecycleError,
    StorageFailure,
    UnknownOrder,
    VersionConflict,
)
from order_lifecycle.models import (
    PAYMENT_ACTIONS,
    SYSTEM,
    AuditAction,
    AuditEvent,
    AuditFilters,
    AuditSummary,
    HumanActor,
    LineItem,
    Order,
)
from order_lifecycle.storage import LifecycleStore

logger = logging.getLogger(__name__)

_ORDER_COLUMNS = (
    "id, reference, status, version, created_at, updated_at, total_price, line_items, "
    "release_type, customer_name, customer_email"
)
_EVENT_COLUMNS = (
    "id, order_id, action, recorded_at, actor_kind, actor_id, actor_name, actor_email, actor_role, "
    "metadata, idempotency_key"
)
_PAYMENT_IN = ", ".join(f"'{a.value}'" for a in sorted(PAYMENT_ACTIONS, key=lambda a: a.value))


@contextmanager
def _storage_errors():
    try:
        yield
    except (LifecycleError, VersionConflict, DuplicateIdempotencyKey):
        raise
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as e:
        logger.error("Storage failure: %s", e)
        raise StorageFailure(str(e)) from e


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _json(value) -> dict | list:
    return json.loads(value) if isinstance(value, str) else value


def _order_from_row(row) -> Order:
    return Order(
        id=row["id"],
        reference=row["reference"],
        status=row["status"],
        version=row["version"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        total_price=row["total_price"],
        line_items=tuple(LineItem(**item) for item in _json(row["line_items"]) or []),
        release_type=row["release_type"],
        customer_name=row["customer_name"],
        customer_email=row["customer_email"],
    )


def _event_from_row(row) -> AuditEvent:
    if row["actor_kind"] == "system":
        actor = SYSTEM
    else:
        actor = HumanActor(
            id=row["actor_id"] or "",
            name=row["actor_name"] or "",
            email=row["actor_email"] or "",
            role=row["actor_role"] or "",
        )
    return AuditEvent(
        id=row["id"],
        order_id=row["order_id"],
        action=row["action"],
        timestamp=row["recorded_at"],
        actor=actor,
        metadata=_json(row["metadata"]) or {},
        idempotency_key=row["idempotency_key"],
    )


def _line_items_json(order: Order) -> str:
    return json.dumps([item.model_dump(mode="json") for item in order.line_items])


def _filter_clause(filters: AuditFilters, params: list) -> str:
    """WHERE body for orders aliased as o. Appends bind values to params."""
    clauses = []
    if filters.q:
        params.append(f"%{_escape_like(filters.q)}%")
        p = f"${len(params)}"
        clauses.append(f"""(
            CAST(o.id AS TEXT) ILIKE {p}
            OR o.reference ILIKE {p}
            OR o.customer_name ILIKE {p}
            OR o.customer_email ILIKE {p}
            OR EXISTS (
                SELECT 1 FROM jsonb_array_elements(o.line_items) AS li
                WHERE li->>'product_name' ILIKE {p}
            )
            OR EXISTS (
                SELECT 1 FROM audit_events qe
                WHERE qe.order_id = o.id AND qe.actor_kind = 'human' AND qe.actor_email ILIKE {p}
            )
        )""")
    if filters.has_event_filter:
        conds = ["fe.order_id = o.id"]
        if filters.action is not None:
            params.append(filters.action.value)
            conds.append(f"fe.action = ${len(params)}")
        if filters.start is not None:
            params.append(filters.start)
            conds.append(f"fe.recorded_at >= ${len(params)}")
        if filters.end is not None:
            params.append(filters.end)
            conds.append(f"fe.recorded_at <= ${len(params)}")
        clauses.append(f"EXISTS (SELECT 1 FROM audit_events fe WHERE {' AND '.join(conds)})")
    return " AND ".join(clauses) or "TRUE"


async def init_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                id BIGINT PRIMARY KEY,
                reference VARCHAR(64) NOT NULL UNIQUE,
                status VARCHAR(20) NOT NULL,
                version INT NOT NULL DEFAULT 0,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                total_price NUMERIC(14, 2) NOT NULL DEFAULT 0,
                line_items JSONB NOT NULL DEFAULT '[]',
                release_type VARCHAR(20),
                customer_name VARCHAR(255) NOT NULL DEFAULT '',
                customer_email VARCHAR(255) NOT NULL DEFAULT ''
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_orders_pending_created_at
            ON orders(created_at) WHERE status = 'pending';
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS audit_events (
                id BIGSERIAL PRIMARY KEY,
                order_id BIGINT NOT NULL REFERENCES orders(id),
                action VARCHAR(40) NOT NULL,
                recorded_at TIMESTAMPTZ NOT NULL,
                actor_kind VARCHAR(10) NOT NULL,
                actor_id VARCHAR(255),
                actor_name VARCHAR(255),
                actor_email VARCHAR(255),
                actor_role VARCHAR(64),
                metadata JSONB NOT NULL DEFAULT '{}',
                idempotency_key VARCHAR(255) UNIQUE
            );
        """)
        await conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_events_order_id ON audit_events(order_id, id);")
        await conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_events_action ON audit_events(action, recorded_at);")
        await conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_events_actor_email ON audit_events(actor_email);")
        # append-only: reject UPDATE/DELETE on the log at the database level too
        await conn.execute("""
            CREATE OR REPLACE FUNCTION audit_events_immutable() RETURNS trigger AS $$
            BEGIN
                RAISE EXCEPTION 'audit_events is append-only';
            END;
            $$ LANGUAGE plpgsql;
        """)
        await conn.execute("DROP TRIGGER IF EXISTS audit_events_no_change ON audit_events;")
        await conn.execute("""
            CREATE TRIGGER audit_events_no_change
            BEFORE UPDATE OR DELETE ON audit_events
            FOR EACH ROW EXECUTE FUNCTION audit_events_immutable();
        """)


class PostgresStore(LifecycleStore):
    def __init__(self, pool: asyncpg.Pool, lock_timeout_ms: int = settings.lock_timeout_ms):
        self._pool = pool
        self._lock_timeout_ms = int(lock_timeout_ms)

    @classmethod
    async def connect(
        cls,
        database_url: str | None = None,
        create_schema: bool = True,
        lock_timeout_ms: int = settings.lock_timeout_ms,
    ) -> "PostgresStore":
        with _storage_errors():
            pool = await asyncpg.create_pool(
                database_url or settings.database_url,
                min_size=1,
                max_size=5,
                command_timeout=60,
            )
            if create_schema:
                await init_schema(pool)
        return cls(pool, lock_timeout_ms)

    async def close(self) -> None:
        await self._pool.close()

    async def create_order(self, order: Order) -> Order:
        with _storage_errors():
            try:
                await self._pool.execute(
                    f"""
                    INSERT INTO orders ({_ORDER_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9, $10, $11);
                    """,
                    order.id,
                    order.reference,
                    order.status.value,
                    order.version,
                    order.created_at,
                    order.last_modified,
                    order.total_price,
                    _line_items_json(order),
                    order.release_type.value if order.release_type else None,
                    order.customer_name,
                    order.customer_email,
                )
            except UniqueViolationError as e:
                raise ValueError(f"order {order.id} / {order.reference} already exists") from e
        return order.model_copy(update={"updated_at": order.last_modified})

    async def get_order(self, order_id: int) -> Order | None:
        with _storage_errors():
            row = await self._pool.fetchrow(f"SELECT {_ORDER_COLUMNS} FROM orders WHERE id = $1;", order_id)
        return _order_from_row(row) if row else None

    async def list_pending_orders(self, created_before: datetime, limit: int) -> list[Order]:
        with _storage_errors():
            rows = await self._pool.fetch(
                f"""
                SELECT {_ORDER_COLUMNS} FROM orders
                WHERE status = 'pending' AND created_at <= $1
                ORDER BY created_at ASC, id ASC
                LIMIT $2;
                """,
                created_before,
                limit,
            )
        return [_order_from_row(r) for r in rows]

    async def _insert_event(self, conn, event: AuditEvent) -> AuditEvent:
        actor = event.actor
        human = isinstance(actor, HumanActor)
        try:
            event_id = await conn.fetchval(
                """
                INSERT INTO audit_events
                    (order_id, action, recorded_at, actor_kind, actor_id, actor_name, actor_email, actor_role,
                     metadata, idempotency_key)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb, $10)
                RETURNING id;
                """,
                event.order_id,
                event.action.value,
                event.timestamp,
                actor.kind,
                actor.id if human else None,
                actor.name if human else None,
                actor.email if human else None,
                actor.role if human else None,
                json.dumps(event.metadata),
                event.idempotency_key,
            )
        except UniqueViolationError:
            raise DuplicateIdempotencyKey(event.idempotency_key)
        except ForeignKeyViolationError:
            raise UnknownOrder(event.order_id)
        return event.model_copy(update={"id": event_id})

    async def append_event(self, event: AuditEvent) -> int:
        with _storage_errors():
            async with self._pool.acquire() as conn:
                stored = await self._insert_event(conn, event)
        return stored.id

    async def commit_transition(self, order: Order, expected_version: int, event: AuditEvent) -> AuditEvent:
        with _storage_errors():
            async with self._pool.acquire() as conn:
                try:
                    async with conn.transaction():
                        await conn.execute(f"SET LOCAL lock_timeout = '{self._lock_timeout_ms}ms';")
                        result = await conn.execute(
                            """
                            UPDATE orders
                            SET status = $1, version = $2, updated_at = $3, total_price = $4,
                                line_items = $5::jsonb, release_type = $6, customer_name = $7, customer_email = $8
                            WHERE id = $9 AND version = $10;
                            """,
                            order.status.value,
                            order.version,
                            order.last_modified,
                            order.total_price,
                            _line_items_json(order),
                            order.release_type.value if order.release_type else None,
                            order.customer_name,
                            order.customer_email,
                            order.id,
                            expected_version,
                        )
                        if result.split()[-1] == "0":
                            raise VersionConflict(order.id, expected_version)
                        return await self._insert_event(conn, event)
                except LockNotAvailableError:
                    raise Busy(order.id, attempts=1)

    async def has_event(self, order_id: int, action: AuditAction) -> bool:
        with _storage_errors():
            return await self._pool.fetchval(
                "SELECT EXISTS (SELECT 1 FROM audit_events WHERE order_id = $1 AND action = $2);",
                order_id,
                action.value,
            )

    async def find_event_by_idempotency_key(self, key: str) -> AuditEvent | None:
        with _storage_errors():
            row = await self._pool.fetchrow(
                f"SELECT {_EVENT_COLUMNS} FROM audit_events WHERE idempotency_key = $1;", key
            )
        return _event_from_row(row) if row else None

    async def list_events(self, order_id: int, offset: int = 0, limit: int | None = None) -> tuple[int, list[AuditEvent]]:
        with _storage_errors():
            async with self._pool.acquire() as conn:
                total = await conn.fetchval("SELECT COUNT(*) FROM audit_events WHERE order_id = $1;", order_id)
                rows = await conn.fetch(
                    f"""
                    SELECT {_EVENT_COLUMNS} FROM audit_events
                    WHERE order_id = $1
                    ORDER BY id ASC
                    OFFSET $2 LIMIT $3;
                    """,
                    order_id,
                    offset,
                    limit,
                )
        return total, [_event_from_row(r) for r in rows]

    async def list_events_for_orders(self, order_ids: list[int]) -> dict[int, list[AuditEvent]]:
        grouped: dict[int, list[AuditEvent]] = {oid: [] for oid in order_ids}
        if not order_ids:
            return grouped
        with _storage_errors():
            rows = await self._pool.fetch(
                f"""
                SELECT {_EVENT_COLUMNS} FROM audit_events
                WHERE order_id = ANY($1::bigint[])
                ORDER BY order_id, id ASC;
                """,
                order_ids,
            )
        for r in rows:
            grouped[r["order_id"]].append(_event_from_row(r))
        return grouped

    async def search_orders(self, filters: AuditFilters, offset: int, limit: int) -> tuple[int, list[Order]]:
        params: list = []
        where = _filter_clause(filters, params)
        with _storage_errors():
            async with self._pool.acquire() as conn:
                total = await conn.fetchval(f"SELECT COUNT(*) FROM orders o WHERE {where};", *params)
                rows = await conn.fetch(
                    f"""
                    SELECT {", ".join("o." + c.strip() for c in _ORDER_COLUMNS.split(","))}
                    FROM orders o
                    WHERE {where}
                    ORDER BY o.created_at DESC, o.id DESC
                    OFFSET ${len(params) + 1} LIMIT ${len(params) + 2};
                    """,
                    *params,
                    offset,
                    limit,
                )
        return total, [_order_from_row(r) for r in rows]

    async def summarize(self, filters: AuditFilters) -> AuditSummary:
        params: list = []
        where = _filter_clause(filters, params)

        def has(action_sql: str) -> str:
            return (
                "COUNT(*) FILTER (WHERE EXISTS (SELECT 1 FROM audit_events se "
                f"WHERE se.order_id = o.id AND se.actor_kind = 'human' AND se.action {action_sql}))"
            )

        with _storage_errors():
            row = await self._pool.fetchrow(
                f"""
                SELECT COUNT(*) AS total,
                       {has(f"IN ({_PAYMENT_IN})")} AS payment,
                       {has(f"= '{AuditAction.ORDER_RELEASED.value}'")} AS release,
                       {has(f"= '{AuditAction.TRUCK_EXIT_RECORDED.value}'")} AS exit
                FROM orders o
                WHERE {where};
                """,
                *params,
            )
        return AuditSummary(total=row["total"], payment=row["payment"], release=row["release"], exit=row["exit"])
