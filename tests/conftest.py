"""
Pytest configuration and fixtures for the order import pipeline tests.

Tests never touch a real database or the network: the API runs with
SKIP_DB_INIT=1 and an in-memory order store, postal lookups are disabled
unless a test injects a mocked HTTP session, and all pacing delays are zero.
"""

import os

os.environ["SKIP_DB_INIT"] = "1"
os.environ.setdefault("POSTAL_LOOKUP_ENABLED", "false")
os.environ.setdefault("VALIDATION_CHUNK_DELAY_MS", "0")
os.environ.setdefault("CARRIER_LOOKUP_DELAY_MS", "0")
os.environ.setdefault("POSTAL_LOOKUP_DELAY_MS", "0")
os.environ.setdefault("MAPPING_DEBOUNCE_MS", "50")
os.environ.setdefault("COMMIT_INITIAL_DELAY_MS", "0")
os.environ.setdefault("AUDIT_INITIAL_DELAY_MS", "0")

import uuid
from typing import Any, Dict, List

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from app.core.config import Settings
from app.domain.imports.models import FieldMapping, to_raw_rows


HEADERS = ["Rastreio", "Cliente", "Email", "Telefone", "Valor", "Data Pedido", "CEP", "Transportadora", "Pedido"]

FULL_MAPPING = {
    "Rastreio": "tracking_code",
    "Cliente": "customer_name",
    "Email": "customer_email",
    "Telefone": "customer_phone",
    "Valor": "order_value",
    "Data Pedido": "order_date",
    "CEP": "delivery_zipcode",
    "Transportadora": "carrier",
    "Pedido": "order_number",
}


class FakeDatabaseError(Exception):
    """Stands in for a driver error carrying an SQLSTATE code."""

    def __init__(self, message: str, code: str = "40001"):
        super().__init__(message)
        self.code = code


class FakeOrderStore:
    """In-memory OrderStore with failure injection for commit tests."""

    def __init__(self):
        self.orders: List[Dict[str, Any]] = []
        self.audit_entries: List[Dict[str, Any]] = []
        self.templates: Dict[str, Dict[str, Any]] = {}
        self.patterns: List[Dict[str, Any]] = []
        self.lookup_calls: List[List[str]] = []
        self.insert_calls = 0
        # Inserts containing any of these row numbers always fail
        self.fail_rows = set()
        # Number of upcoming insert calls that fail before inserts succeed again
        self.transient_failures = 0
        self.fail_audit = False

    def find_by_tracking_codes(self, codes):
        self.lookup_calls.append(list(codes))
        wanted = {code.strip().upper() for code in codes}
        return [dict(order) for order in self.orders if order["tracking_code"].upper() in wanted]

    def insert_orders(self, records, session_id=None):
        self.insert_calls += 1
        if self.transient_failures > 0:
            self.transient_failures -= 1
            raise FakeDatabaseError("could not serialize access")
        if any(record.row_number in self.fail_rows for record in records):
            raise FakeDatabaseError("deadlock detected")
        inserted = []
        for record in records:
            order = {
                "id": str(uuid.uuid4()),
                "tracking_code": record.get("tracking_code"),
                "customer_email": record.get("customer_email"),
                "order_number": record.get("order_number"),
                "row_number": record.row_number,
                "session_id": session_id,
            }
            self.orders.append(order)
            inserted.append({"id": order["id"], "tracking_code": order["tracking_code"], "row_number": record.row_number})
        return inserted

    def append_audit_entries(self, entries):
        if self.fail_audit:
            raise FakeDatabaseError("audit table unavailable", code="53300")
        self.audit_entries.extend(dict(entry) for entry in entries)

    def save_mapping_template(self, name, assignments, description=None):
        template = self.templates.get(name) or {"id": str(uuid.uuid4()), "name": name}
        template.update({"description": description, "assignments": dict(assignments)})
        self.templates[name] = template
        return dict(template)

    def list_mapping_templates(self):
        return [dict(self.templates[name]) for name in sorted(self.templates)]

    def load_mapping_patterns(self):
        return [dict(pattern) for pattern in self.patterns]

    def save_mapping_patterns(self, patterns):
        by_key = {(item["column_pattern"], item["field"]): item for item in self.patterns}
        for pattern in patterns:
            by_key[(pattern["column_pattern"], pattern["field"])] = dict(pattern)
        self.patterns = list(by_key.values())


def build_rows(count: int, start: int = 1) -> List[Dict[str, str]]:
    """Clean order rows: every value passes its format and carrier checks."""
    rows = []
    for number in range(start, start + count):
        rows.append({
            "Rastreio": f"SM{number:010d}BR",
            "Cliente": f"Cliente {number}",
            "Email": f"cliente{number}@example.com",
            "Telefone": "(11) 98765-4321",
            "Valor": "150,00",
            "Data Pedido": f"{(number % 28) + 1:02d}/03/2024",
            "CEP": "01001-000",
            "Transportadora": "Correios",
            "Pedido": f"PED-{number:05d}",
        })
    return rows


@pytest.fixture
def fake_store():
    return FakeOrderStore()


@pytest.fixture
def make_rows():
    return build_rows


@pytest.fixture
def raw_rows():
    return lambda rows: to_raw_rows(rows)


@pytest.fixture
def headers():
    return list(HEADERS)


@pytest.fixture
def full_mapping():
    return FieldMapping(FULL_MAPPING)


@pytest.fixture
def test_settings():
    return Settings(
        validation_chunk_size=100,
        validation_chunk_delay_ms=0,
        carrier_lookup_delay_ms=0,
        postal_lookup_delay_ms=0,
        postal_lookup_enabled=False,
        mapping_debounce_ms=50,
        commit_chunk_size=100,
        commit_initial_delay_ms=0,
        audit_initial_delay_ms=0,
    )


@pytest.fixture
def sqlite_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    yield engine
    engine.dispose()
