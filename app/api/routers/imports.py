"""
Import-session endpoints: create a session from parsed rows, adjust the
column mapping, inspect the quality report and commit accepted records.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from app.api.dependencies import (
    build_executor,
    build_suite,
    get_session_or_404,
    get_store,
    register_session,
    remove_session,
    resolve_rules,
)
from app.api.schemas.imports import (
    CreateSessionRequest,
    ImportResultResponse,
    MappingSuggestionModel,
    MappingTemplateListResponse,
    MappingTemplateModel,
    SaveTemplateRequest,
    SessionResponse,
    UpdateMappingRequest,
)
from app.db.store import OrderStore
from app.domain.imports.errors import CommitBlockedError, CommitInProgressError, SessionClosedError
from app.domain.imports.models import FieldMapping
from app.domain.imports.session import MappingSession
from app.domain.imports.suggestions import MappingSuggestion, apply_template, compatible_templates

router = APIRouter(tags=["imports"])

logger = logging.getLogger(__name__)


def _mapping_from_suggestions(suggestions: List[MappingSuggestionModel]) -> FieldMapping:
    """Most confident column per field wins; one field per column."""
    assignments = {}
    taken = set()
    for suggestion in sorted(suggestions, key=lambda item: -item.confidence):
        if suggestion.field in taken or suggestion.column in assignments:
            continue
        assignments[suggestion.column] = suggestion.field
        taken.add(suggestion.field)
    return FieldMapping(assignments)


def _find_template(store: OrderStore, name: str) -> dict:
    for template in store.list_mapping_templates():
        if template["name"] == name:
            return template
    raise HTTPException(status_code=404, detail=f"Mapping template '{name}' not found")


@router.post("/import-sessions", response_model=SessionResponse, status_code=201)
def create_import_session(request: CreateSessionRequest, store: OrderStore = Depends(get_store)):
    """
    Create an import session and run the first validation.

    The starting mapping comes from, in order: the explicit ``mapping``, a
    named template, the supplied suggestions, or the built-in advisor.
    """
    rules = resolve_rules(request.rules, request.use_default_rules)
    suite = build_suite(store, rules)
    executor = build_executor(store, suite.advisor)

    mapping: Optional[FieldMapping] = None
    suggestions = None
    if request.mapping is not None:
        mapping = FieldMapping(request.mapping)
    elif request.template_name:
        mapping, suggestions = apply_template(_find_template(store, request.template_name), request.headers)
    elif request.suggestions:
        mapping = _mapping_from_suggestions(request.suggestions)
    if request.suggestions and suggestions is None:
        suggestions = [
            MappingSuggestion(
                column=item.column,
                field=item.field,
                confidence=item.confidence,
                reasoning=item.reasoning,
                alternatives=[(alt.field, alt.confidence) for alt in item.alternatives],
            )
            for item in request.suggestions
        ]

    session = MappingSession(
        request.headers,
        request.rows,
        suite=suite,
        executor=executor,
        mapping=mapping,
        suggestions=suggestions,
    )
    register_session(session)
    logger.info("Created import session %s (%d rows, %d columns)", session.id, len(session.rows), len(session.headers))
    session.validate_now()
    return session.to_dict()


@router.get("/import-sessions/{session_id}", response_model=SessionResponse)
def get_import_session(session_id: str):
    return get_session_or_404(session_id).to_dict()


@router.put("/import-sessions/{session_id}/mapping", response_model=SessionResponse)
def update_import_mapping(session_id: str, request: UpdateMappingRequest):
    """
    Replace the column mapping. With ``immediate`` the new report is returned
    in the response; otherwise revalidation is debounced and the report can
    be fetched later.
    """
    session = get_session_or_404(session_id)
    mapping = FieldMapping(request.mapping)
    try:
        if request.immediate:
            session.validate_now(mapping)
        else:
            session.update_mapping(mapping)
    except (CommitBlockedError, SessionClosedError) as exc:
        raise HTTPException(status_code=409, detail=exc.message)
    return session.to_dict()


@router.post("/import-sessions/{session_id}/commit", response_model=ImportResultResponse)
def commit_import_session(session_id: str):
    session = get_session_or_404(session_id)
    try:
        result = session.commit()
    except (CommitBlockedError, CommitInProgressError, SessionClosedError) as exc:
        logger.info("Commit refused for session %s: %s", session_id, exc.message)
        raise HTTPException(status_code=409, detail=exc.message)
    return result.to_dict()


@router.delete("/import-sessions/{session_id}")
def delete_import_session(session_id: str):
    remove_session(session_id)
    return {"id": session_id, "status": "closed"}


@router.post("/import-sessions/{session_id}/templates", response_model=MappingTemplateModel, status_code=201)
def save_mapping_template(session_id: str, request: SaveTemplateRequest):
    session = get_session_or_404(session_id)
    if not session.mapping.assignments:
        raise HTTPException(status_code=400, detail="The session has no mapping to save")
    return session.save_template(request.name.strip(), request.description)


@router.post("/import-sessions/{session_id}/templates/{template_name}/apply", response_model=SessionResponse)
def apply_mapping_template(session_id: str, template_name: str, store: OrderStore = Depends(get_store)):
    session = get_session_or_404(session_id)
    template = _find_template(store, template_name)
    if not compatible_templates([template], session.headers):
        raise HTTPException(
            status_code=400,
            detail=f"Mapping template '{template_name}' uses columns missing from this file",
        )
    try:
        session.apply_template(template, immediate=True)
    except (CommitBlockedError, SessionClosedError) as exc:
        raise HTTPException(status_code=409, detail=exc.message)
    return session.to_dict()


@router.get("/mapping-templates", response_model=MappingTemplateListResponse)
def list_mapping_templates(
    headers: Optional[List[str]] = Query(None, description="Only return templates whose columns are all present"),
    store: OrderStore = Depends(get_store),
):
    templates = store.list_mapping_templates()
    if headers:
        templates = compatible_templates(templates, headers)
    return {"templates": templates}
