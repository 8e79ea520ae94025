import os

import pytest
from fastapi.testclient import TestClient

os.environ["SKIP_DB_INIT"] = "1"
from app.main import app
from app.api.dependencies import get_store, session_storage
from app.utils.locks import SessionLockManager

client = TestClient(app)


@pytest.fixture(autouse=True)
def api_store(fake_store):
    app.dependency_overrides[get_store] = lambda: fake_store
    yield fake_store
    app.dependency_overrides.pop(get_store, None)
    for session in list(session_storage.values()):
        session.close()
    session_storage.clear()


def _create(headers, rows, **extra):
    payload = {"headers": headers, "rows": rows}
    payload.update(extra)
    response = client.post("/import-sessions", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def test_root():
    """Test root endpoint."""
    response = client.get("/")
    assert response.status_code == 200
    assert response.json() == {"message": "Order Import API", "version": "1.0.0"}


def test_health_counts_sessions(headers, make_rows, full_mapping):
    _create(headers, make_rows(2), mapping=full_mapping.assignments)
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["sessions"] == 1


def test_create_session_validates_immediately(headers, make_rows, full_mapping):
    data = _create(headers, make_rows(5), mapping=full_mapping.assignments)

    assert data["status"] == "ready"
    assert data["version"] == 1
    assert data["total_rows"] == 5
    assert data["report"]["score"] == 100
    assert data["report"]["is_valid"] is True
    assert len(data["report"]["preview"]) == 3
    assert data["report"]["alerts"][0]["type"] == "success"


def test_create_session_without_mapping_uses_suggestions(headers, make_rows, full_mapping):
    data = _create(headers, make_rows(3))

    assert data["mapping"] == full_mapping.assignments
    assert {item["column"] for item in data["suggestions"]} == set(headers)


def test_explicit_suggestions_pick_most_confident_column(make_rows):
    rows = [{"Rastreio": row["Rastreio"], "Codigo": row["Rastreio"], "Cliente": row["Cliente"], "Email": row["Email"]}
            for row in make_rows(3)]
    suggestions = [
        {"column": "Codigo", "field": "tracking_code", "confidence": 0.6},
        {"column": "Rastreio", "field": "tracking_code", "confidence": 0.95},
        {"column": "Cliente", "field": "customer_name", "confidence": 0.9},
        {"column": "Email", "field": "customer_email", "confidence": 0.9},
    ]
    data = _create(["Rastreio", "Codigo", "Cliente", "Email"], rows, suggestions=suggestions)

    assert data["mapping"] == {"Rastreio": "tracking_code", "Cliente": "customer_name", "Email": "customer_email"}
    assert len(data["suggestions"]) == 4


def test_duplicate_headers_are_rejected():
    response = client.post("/import-sessions", json={"headers": ["A", " A"], "rows": []})
    assert response.status_code == 422


def test_default_rules_flag_disposable_email(headers, make_rows, full_mapping):
    rows = make_rows(3)
    rows[0]["Email"] = "bot@mailinator.com"
    data = _create(headers, rows, mapping=full_mapping.assignments, use_default_rules=True)

    titles = [alert["title"] for alert in data["report"]["alerts"]]
    assert "Records blocked for fraud risk" in titles
    assert data["report"]["record_summary"]["invalid"] == 1


def test_get_unknown_session_is_404():
    response = client.get("/import-sessions/does-not-exist")
    assert response.status_code == 404


def test_update_mapping_revalidates(headers, make_rows, full_mapping):
    created = _create(headers, make_rows(4), mapping=full_mapping.assignments)
    mapping = dict(full_mapping.assignments)
    mapping.pop("Email")

    response = client.put(f"/import-sessions/{created['id']}/mapping", json={"mapping": mapping})
    assert response.status_code == 200
    data = response.json()
    assert data["version"] == 2
    assert data["report"]["is_valid"] is False
    assert any(alert["field"] == "customer_email" and alert["type"] == "error" for alert in data["report"]["alerts"])


def test_debounced_update_returns_before_validation(headers, make_rows, full_mapping):
    created = _create(headers, make_rows(4), mapping=full_mapping.assignments)

    response = client.put(
        f"/import-sessions/{created['id']}/mapping",
        json={"mapping": full_mapping.assignments, "immediate": False},
    )
    assert response.status_code == 200
    session = session_storage[created["id"]]
    assert session.wait_until_idle(timeout=5)
    assert session.version == 2


def test_commit_and_recommit(api_store, headers, make_rows, full_mapping):
    created = _create(headers, make_rows(6), mapping=full_mapping.assignments)

    response = client.post(f"/import-sessions/{created['id']}/commit")
    assert response.status_code == 200
    data = response.json()
    assert data["success"] == 6
    assert data["errors"] == 0
    assert data["metrics"]["succeeded"] == 6
    assert len(api_store.orders) == 6

    response = client.post(f"/import-sessions/{created['id']}/commit")
    assert response.status_code == 409
    assert "already been committed" in response.json()["detail"]

    response = client.put(f"/import-sessions/{created['id']}/mapping", json={"mapping": full_mapping.assignments})
    assert response.status_code == 409
    assert client.get(f"/import-sessions/{created['id']}").json()["status"] == "committed"


def test_commit_blocked_by_errors(api_store, headers, make_rows, full_mapping):
    mapping = dict(full_mapping.assignments)
    mapping.pop("Rastreio")
    created = _create(headers, make_rows(2), mapping=mapping)

    response = client.post(f"/import-sessions/{created['id']}/commit")
    assert response.status_code == 409
    assert api_store.orders == []


def test_commit_while_another_commit_runs(headers, make_rows, full_mapping):
    created = _create(headers, make_rows(2), mapping=full_mapping.assignments)

    with SessionLockManager.acquire(created["id"]):
        response = client.post(f"/import-sessions/{created['id']}/commit")
    assert response.status_code == 409


def test_delete_session(headers, make_rows, full_mapping):
    created = _create(headers, make_rows(2), mapping=full_mapping.assignments)

    response = client.delete(f"/import-sessions/{created['id']}")
    assert response.status_code == 200
    assert response.json() == {"id": created["id"], "status": "closed"}
    assert client.delete(f"/import-sessions/{created['id']}").status_code == 404
    assert client.get(f"/import-sessions/{created['id']}").status_code == 404


def test_templates_save_list_and_apply(api_store, headers, make_rows, full_mapping):
    created = _create(headers, make_rows(3), mapping=full_mapping.assignments)

    response = client.post(
        f"/import-sessions/{created['id']}/templates",
        json={"name": "loja-a", "description": "Weekly export"},
    )
    assert response.status_code == 201
    assert response.json()["assignments"] == full_mapping.assignments

    response = client.get("/mapping-templates", params={"headers": headers})
    assert [template["name"] for template in response.json()["templates"]] == ["loja-a"]
    response = client.get("/mapping-templates", params={"headers": ["Other"]})
    assert response.json()["templates"] == []

    other = _create(headers, make_rows(3), mapping={"Rastreio": "tracking_code"})
    response = client.post(f"/import-sessions/{other['id']}/templates/loja-a/apply")
    assert response.status_code == 200
    assert response.json()["mapping"] == full_mapping.assignments
    assert response.json()["report"]["is_valid"] is True


def test_apply_unknown_or_incompatible_template(api_store, headers, make_rows, full_mapping):
    created = _create(headers, make_rows(2), mapping=full_mapping.assignments)
    api_store.save_mapping_template("other-file", {"Tracking": "tracking_code"})

    assert client.post(f"/import-sessions/{created['id']}/templates/missing/apply").status_code == 404
    assert client.post(f"/import-sessions/{created['id']}/templates/other-file/apply").status_code == 400


def test_create_from_template_name(api_store, headers, make_rows, full_mapping):
    api_store.save_mapping_template("loja-a", full_mapping.assignments)
    data = _create(headers, make_rows(2), template_name="loja-a")

    assert data["mapping"] == full_mapping.assignments
    assert {item["confidence"] for item in data["suggestions"]} == {0.9}


def test_saving_empty_mapping_is_rejected(headers, make_rows):
    created = _create(headers, make_rows(2), mapping={})
    response = client.post(f"/import-sessions/{created['id']}/templates", json={"name": "empty"})
    assert response.status_code == 400
