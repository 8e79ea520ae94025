"""
Shared dependencies and state for the API.

Import sessions live in process memory; orders, audit entries and mapping
memory live in the order store.
"""
import threading
from typing import Dict, Optional

from fastapi import HTTPException

from app.api.schemas.rules import RuleSet
from app.core.config import settings
from app.db.store import OrderStore, SqlOrderStore
from app.domain.imports.business_rules import default_business_rules
from app.domain.imports.commit import CommitExecutor
from app.domain.imports.fraud import default_fraud_patterns
from app.domain.imports.pipeline import ValidationSuite
from app.domain.imports.session import MappingSession
from app.domain.imports.suggestions import MappingAdvisor

# Active import sessions keyed by session id (in production, pin clients to one worker)
session_storage: Dict[str, MappingSession] = {}
_storage_lock = threading.Lock()

_store: Optional[OrderStore] = None


def get_store() -> OrderStore:
    """Order store backed by the application database; tables are created at startup."""
    global _store
    if _store is None:
        from app.db.session import get_engine

        _store = SqlOrderStore(get_engine(), create_tables=False)
    return _store


def resolve_rules(rules: Optional[RuleSet], use_defaults: bool) -> RuleSet:
    """Rules from the request, falling back to the common presets when asked."""
    if rules is None:
        rules = RuleSet()
    if use_defaults:
        rules = RuleSet(
            business_rules=rules.business_rules or default_business_rules(),
            seasonal_patterns=rules.seasonal_patterns,
            fraud_patterns=rules.fraud_patterns or default_fraud_patterns(),
        )
    return rules


def build_suite(store: OrderStore, rules: RuleSet) -> ValidationSuite:
    return ValidationSuite(store=store, rules=rules, advisor=MappingAdvisor(store), config=settings)


def build_executor(store: OrderStore, advisor: MappingAdvisor) -> CommitExecutor:
    return CommitExecutor(store, config=settings, advisor=advisor)


def register_session(session: MappingSession) -> None:
    with _storage_lock:
        session_storage[session.id] = session


def get_session_or_404(session_id: str) -> MappingSession:
    with _storage_lock:
        session = session_storage.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Import session '{session_id}' not found")
    return session


def remove_session(session_id: str) -> MappingSession:
    with _storage_lock:
        session = session_storage.pop(session_id, None)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Import session '{session_id}' not found")
    session.close()
    return session


def close_all_sessions() -> None:
    with _storage_lock:
        sessions = list(session_storage.values())
        session_storage.clear()
    for session in sessions:
        session.close()
