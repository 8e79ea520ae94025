"""
Order storage used by the import pipeline.

The pipeline only depends on the ``OrderStore`` contract. ``SqlOrderStore``
implements it with plain SQL through SQLAlchemy so it runs unchanged on
PostgreSQL and SQLite.
"""
import json
import logging
import uuid
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

from sqlalchemy import bindparam, text
from sqlalchemy.engine import Engine

from app.domain.imports.models import CanonicalRecord

logger = logging.getLogger(__name__)

LOOKUP_BATCH_SIZE = 500


class OrderStore(Protocol):
    def find_by_tracking_codes(self, codes: Sequence[str]) -> List[Dict[str, Any]]: ...

    def insert_orders(self, records: Sequence[CanonicalRecord], session_id: Optional[str] = None) -> List[Dict[str, Any]]: ...

    def append_audit_entries(self, entries: Sequence[Mapping[str, Any]]) -> None: ...

    def save_mapping_template(self, name: str, assignments: Mapping[str, str], description: Optional[str] = None) -> Dict[str, Any]: ...

    def list_mapping_templates(self) -> List[Dict[str, Any]]: ...

    def load_mapping_patterns(self) -> List[Dict[str, Any]]: ...

    def save_mapping_patterns(self, patterns: Iterable[Mapping[str, Any]]) -> None: ...


CREATE_TABLE_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS orders (
        id VARCHAR(36) PRIMARY KEY,
        tracking_code VARCHAR(64) NOT NULL,
        customer_name TEXT,
        customer_email TEXT,
        order_number TEXT,
        status VARCHAR(16) NOT NULL,
        data TEXT NOT NULL,
        warnings TEXT,
        source_row INTEGER,
        import_session_id VARCHAR(64),
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_orders_tracking_code ON orders (tracking_code)",
    """
    CREATE TABLE IF NOT EXISTS order_audit_log (
        id VARCHAR(36) PRIMARY KEY,
        order_id VARCHAR(36),
        tracking_code VARCHAR(64),
        action VARCHAR(32) NOT NULL,
        import_session_id VARCHAR(64),
        details TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS mapping_templates (
        id VARCHAR(36) PRIMARY KEY,
        name VARCHAR(255) NOT NULL UNIQUE,
        description TEXT,
        assignments TEXT NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS mapping_patterns (
        column_pattern VARCHAR(255) NOT NULL,
        field VARCHAR(64) NOT NULL,
        confidence FLOAT NOT NULL,
        usage_count INTEGER NOT NULL DEFAULT 1,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (column_pattern, field)
    )
    """,
)


def create_order_tables(engine: Engine) -> None:
    """Create the order, audit and mapping-memory tables if they do not exist."""
    with engine.begin() as conn:
        for statement in CREATE_TABLE_STATEMENTS:
            conn.execute(text(statement))
    logger.info("Order import tables ready")


class SqlOrderStore:
    def __init__(self, engine: Engine, *, create_tables: bool = True):
        self.engine = engine
        if create_tables:
            create_order_tables(engine)

    def find_by_tracking_codes(self, codes: Sequence[str]) -> List[Dict[str, Any]]:
        """Existing orders whose tracking code matches any of ``codes`` (case-insensitive)."""
        normalized = sorted({code.strip().upper() for code in codes if code and code.strip()})
        if not normalized:
            return []
        query = text(
            "SELECT id, tracking_code, customer_email, order_number FROM orders "
            "WHERE UPPER(tracking_code) IN :codes"
        ).bindparams(bindparam("codes", expanding=True))

        found: List[Dict[str, Any]] = []
        with self.engine.connect() as conn:
            for start in range(0, len(normalized), LOOKUP_BATCH_SIZE):
                batch = normalized[start:start + LOOKUP_BATCH_SIZE]
                rows = conn.execute(query, {"codes": batch}).mappings().all()
                found.extend(dict(row) for row in rows)
        return found

    def insert_orders(self, records: Sequence[CanonicalRecord], session_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Insert all records in one transaction; returns the new ids with their tracking codes."""
        if not records:
            return []
        rows = []
        for record in records:
            rows.append({
                "id": str(uuid.uuid4()),
                "tracking_code": record.get("tracking_code"),
                "customer_name": record.get("customer_name") or None,
                "customer_email": record.get("customer_email") or None,
                "order_number": record.get("order_number") or None,
                "status": record.status.value,
                "data": json.dumps(record.values, ensure_ascii=False, sort_keys=True),
                "warnings": json.dumps(record.warnings, ensure_ascii=False) if record.warnings else None,
                "source_row": record.row_number,
                "import_session_id": session_id,
            })
        insert_sql = text(
            """
            INSERT INTO orders (id, tracking_code, customer_name, customer_email, order_number,
                                status, data, warnings, source_row, import_session_id)
            VALUES (:id, :tracking_code, :customer_name, :customer_email, :order_number,
                    :status, :data, :warnings, :source_row, :import_session_id)
            """
        )
        with self.engine.begin() as conn:
            conn.execute(insert_sql, rows)
        return [{"id": row["id"], "tracking_code": row["tracking_code"], "row_number": row["source_row"]} for row in rows]

    def append_audit_entries(self, entries: Sequence[Mapping[str, Any]]) -> None:
        if not entries:
            return
        rows = [
            {
                "id": str(uuid.uuid4()),
                "order_id": entry.get("order_id"),
                "tracking_code": entry.get("tracking_code"),
                "action": entry.get("action", "imported"),
                "import_session_id": entry.get("session_id"),
                "details": json.dumps(entry.get("details") or {}, ensure_ascii=False, default=str),
            }
            for entry in entries
        ]
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO order_audit_log (id, order_id, tracking_code, action, import_session_id, details)
                    VALUES (:id, :order_id, :tracking_code, :action, :import_session_id, :details)
                    """
                ),
                rows,
            )

    def save_mapping_template(self, name: str, assignments: Mapping[str, str], description: Optional[str] = None) -> Dict[str, Any]:
        """Create or replace the template called ``name``."""
        template_id = str(uuid.uuid4())
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO mapping_templates (id, name, description, assignments)
                    VALUES (:id, :name, :description, :assignments)
                    ON CONFLICT (name) DO UPDATE
                    SET description = EXCLUDED.description,
                        assignments = EXCLUDED.assignments
                    """
                ),
                {
                    "id": template_id,
                    "name": name,
                    "description": description,
                    "assignments": json.dumps(dict(assignments), ensure_ascii=False),
                },
            )
            row = conn.execute(
                text("SELECT id, name, description, assignments FROM mapping_templates WHERE name = :name"),
                {"name": name},
            ).mappings().one()
        return self._template_from_row(row)

    def list_mapping_templates(self) -> List[Dict[str, Any]]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                text("SELECT id, name, description, assignments FROM mapping_templates ORDER BY name")
            ).mappings().all()
        return [self._template_from_row(row) for row in rows]

    def load_mapping_patterns(self) -> List[Dict[str, Any]]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                text("SELECT column_pattern, field, confidence, usage_count FROM mapping_patterns")
            ).mappings().all()
        return [dict(row) for row in rows]

    def save_mapping_patterns(self, patterns: Iterable[Mapping[str, Any]]) -> None:
        rows = [
            {
                "column_pattern": pattern["column_pattern"],
                "field": pattern["field"],
                "confidence": float(pattern["confidence"]),
                "usage_count": int(pattern.get("usage_count", 1)),
            }
            for pattern in patterns
        ]
        if not rows:
            return
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO mapping_patterns (column_pattern, field, confidence, usage_count)
                    VALUES (:column_pattern, :field, :confidence, :usage_count)
                    ON CONFLICT (column_pattern, field) DO UPDATE
                    SET confidence = EXCLUDED.confidence,
                        usage_count = EXCLUDED.usage_count,
                        updated_at = CURRENT_TIMESTAMP
                    """
                ),
                rows,
            )

    @staticmethod
    def _template_from_row(row: Mapping[str, Any]) -> Dict[str, Any]:
        return {
            "id": row["id"],
            "name": row["name"],
            "description": row["description"],
            "assignments": json.loads(row["assignments"]) if row["assignments"] else {},
        }
