from __future__ import annotations

import sys
import time
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

APP_ROOT = Path(__file__).resolve().parents[1] / "app"
if str(APP_ROOT) not in sys.path:
    sys.path.insert(0, str(APP_ROOT))

from armory_app.core.rules import GroupingRule  # noqa: E402
from armory_app.infrastructure.db import DataConnectionError  # noqa: E402
from armory_app.web.app import create_app  # noqa: E402
from armory_app.web.core.runtime import get_config  # noqa: E402
from armory_app.web.routers.admin.permissions import RELOAD_FAILED_MESSAGE  # noqa: E402

PERMISSIONS_PATH = "/admin/permissions"


@pytest.fixture()
def client(isolated_local_db: Path):
    get_config.cache_clear()
    app = create_app()
    with TestClient(app, follow_redirects=False) as test_client:
        yield test_client
    get_config.cache_clear()


def _index(client: TestClient) -> dict:
    response = client.get(PERMISSIONS_PATH)
    assert response.status_code == 200
    return response.json()


def _flash_messages(payload: dict) -> list[str]:
    return [item["message"] for item in payload["flashes"]]


def test_index_lists_seeded_roles_and_bootstrap_admin(client: TestClient) -> None:
    payload = _index(client)

    assert {"admin", "editor", "viewer"} <= set(payload["roles"])
    assert payload["role_permissions"]["admin"] == ["*:*"]
    assert payload["role_users"]["admin"] == ["admin@example.com"]
    assert payload["user_roles"]["admin@example.com"] == ["admin"]
    assert payload["engine"]["state"] == "loaded"


def test_assign_and_remove_role_flow(client: TestClient) -> None:
    assign = client.post(
        f"{PERMISSIONS_PATH}/assign",
        data={"user": "Bob@Example.com", "role": "editor"},
        follow_redirects=False,
    )
    assert assign.status_code == 303
    assert assign.headers["location"] == PERMISSIONS_PATH

    payload = _index(client)
    assert _flash_messages(payload) == ["Role assigned successfully"]
    assert payload["user_roles"]["bob@example.com"] == ["editor"]

    client.post(f"{PERMISSIONS_PATH}/assign", data={"user": "bob@example.com", "role": "editor"})
    assert _flash_messages(_index(client)) == ["User already has this role"]

    client.post(f"{PERMISSIONS_PATH}/remove", data={"user": "bob@example.com", "role": "editor"})
    payload = _index(client)
    assert _flash_messages(payload) == ["Role removed successfully"]
    assert "bob@example.com" not in payload["user_roles"]

    client.post(f"{PERMISSIONS_PATH}/remove", data={"user": "bob@example.com", "role": "editor"})
    assert _flash_messages(_index(client)) == ["User did not have that role."]


def test_assign_rejects_unknown_role(client: TestClient) -> None:
    client.post(f"{PERMISSIONS_PATH}/assign", data={"user": "bob@example.com", "role": "ghost"})

    payload = _index(client)
    assert _flash_messages(payload) == ["Role `ghost` does not exist."]
    assert "bob@example.com" not in payload["user_roles"]


def test_last_admin_cannot_be_removed(client: TestClient) -> None:
    client.post(f"{PERMISSIONS_PATH}/remove", data={"user": "admin@example.com", "role": "admin"})

    payload = _index(client)
    assert _flash_messages(payload) == ["Cannot remove the last admin."]
    assert payload["role_users"]["admin"] == ["admin@example.com"]


def test_create_update_and_delete_custom_role(client: TestClient) -> None:
    client.post(
        f"{PERMISSIONS_PATH}/roles",
        data={"role": "auditor", "permissions": ["payments:read", "owners:read"]},
    )
    payload = _index(client)
    assert _flash_messages(payload) == ["Role `auditor` created."]
    assert payload["role_permissions"]["auditor"] == ["owners:read", "payments:read"]

    client.post(f"{PERMISSIONS_PATH}/roles", data={"role": "auditor", "permissions": ["guns:read"]})
    assert _flash_messages(_index(client)) == ["Role already exists."]

    client.post(f"{PERMISSIONS_PATH}/roles/auditor/update", data={"permissions": ["guns:read"]})
    payload = _index(client)
    assert _flash_messages(payload) == ["Role `auditor` updated."]
    assert payload["role_permissions"]["auditor"] == ["guns:read"]

    client.post(f"{PERMISSIONS_PATH}/roles/auditor/delete")
    payload = _index(client)
    assert _flash_messages(payload) == ["Role `auditor` deleted."]
    assert "auditor" not in payload["roles"]


def test_create_role_rejects_unknown_permission(client: TestClient) -> None:
    client.post(f"{PERMISSIONS_PATH}/roles", data={"role": "auditor", "permissions": ["spaceships:read"]})

    payload = _index(client)
    assert _flash_messages(payload) == ["Unknown resource `spaceships`."]
    assert "auditor" not in payload["roles"]


def test_builtin_roles_cannot_be_deleted(client: TestClient) -> None:
    client.post(f"{PERMISSIONS_PATH}/roles/viewer/delete")

    payload = _index(client)
    assert _flash_messages(payload) == ["Cannot delete built-in roles."]
    assert "viewer" in payload["roles"]


def test_update_of_missing_role_is_refused(client: TestClient) -> None:
    client.post(f"{PERMISSIONS_PATH}/roles/ghost/update", data={"permissions": ["guns:read"]})

    assert _flash_messages(_index(client)) == ["Role does not exist."]


def test_import_defaults_resets_permissions_and_keeps_assignments(client: TestClient) -> None:
    client.post(f"{PERMISSIONS_PATH}/roles", data={"role": "auditor", "permissions": ["payments:read"]})
    client.post(f"{PERMISSIONS_PATH}/assign", data={"user": "bob@example.com", "role": "editor"})
    _index(client)

    client.post(f"{PERMISSIONS_PATH}/import-defaults")

    payload = _index(client)
    assert _flash_messages(payload) == ["Default policies imported successfully"]
    assert "auditor" not in payload["roles"]
    assert payload["user_roles"]["bob@example.com"] == ["editor"]
    assert payload["user_roles"]["admin@example.com"] == ["admin"]


def test_export_and_import_policy_csv(client: TestClient) -> None:
    export = client.get(f"{PERMISSIONS_PATH}/export")
    assert export.status_code == 200
    assert export.headers["content-type"].startswith("text/csv")
    assert "p, admin, *, *" in export.text
    assert "g, admin@example.com, admin" in export.text

    client.post(
        f"{PERMISSIONS_PATH}/import",
        data={"csv_text": "# extra\ng, carol@example.com, viewer\np, admin, *, *\n"},
    )
    payload = _index(client)
    assert _flash_messages(payload) == ["Imported 1 rule(s)."]
    assert payload["user_roles"]["carol@example.com"] == ["viewer"]


def test_import_rejects_malformed_csv(client: TestClient) -> None:
    client.post(f"{PERMISSIONS_PATH}/import", data={"csv_text": "x, nobody, guns\n"})

    payload = _index(client)
    assert len(payload["flashes"]) == 1
    assert payload["flashes"][0]["level"] == "error"
    assert payload["flashes"][0]["message"].startswith("Line 1:")


def test_reload_reports_active_rule_count(client: TestClient) -> None:
    client.post(f"{PERMISSIONS_PATH}/reload")

    messages = _flash_messages(_index(client))
    assert len(messages) == 1
    assert messages[0].startswith("Policy reloaded.")


def test_denied_user_is_redirected_with_flash(client: TestClient) -> None:
    denied = client.get(
        PERMISSIONS_PATH,
        headers={"x-forwarded-email": "mallory@example.com"},
        follow_redirects=False,
    )
    assert denied.status_code == 303
    assert denied.headers["location"] == "/"

    home = client.get("/")
    assert home.json()["flashes"] == [
        {"message": "You do not have authorization for that resource", "level": "error"}
    ]


def test_api_denies_with_json_error(client: TestClient) -> None:
    response = client.get("/api/roles", headers={"x-forwarded-email": "mallory@example.com"})

    assert response.status_code == 403
    body = response.json()
    assert body["ok"] is False
    assert body["error"]["code"] == "FORBIDDEN"
    assert response.headers["X-Request-ID"]


def test_api_permission_check_and_user_roles(client: TestClient) -> None:
    check = client.get(
        "/api/permissions/check",
        params={"subject": "admin@example.com", "obj": "guns", "action": "delete"},
    )
    assert check.status_code == 200
    assert check.json()["allowed"] is True

    viewer_check = client.get(
        "/api/permissions/check",
        params={"subject": "nobody@example.com", "obj": "guns", "action": "delete"},
    )
    assert viewer_check.json()["allowed"] is False

    roles = client.get("/api/users/admin@example.com/roles")
    assert roles.json()["roles"] == ["admin"]


def test_health_reports_loaded_engine(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["policy_engine"]["state"] == "loaded"
    assert body["policy_engine"]["rule_count"] > 0


def test_anonymous_page_request_is_sent_to_login(monkeypatch: pytest.MonkeyPatch, isolated_local_db: Path) -> None:
    monkeypatch.delenv("ARMORY_TEST_USER", raising=False)
    get_config.cache_clear()
    with TestClient(create_app(), follow_redirects=False) as anonymous:
        page = anonymous.get(PERMISSIONS_PATH)
        assert page.status_code == 303
        assert page.headers["location"] == "/"

        home = anonymous.get("/")
        assert home.json()["user"] is None
        assert home.json()["flashes"][0]["message"] == "You must log in to access that resource"

        api = anonymous.get("/api/roles")
        assert api.status_code == 401
        assert api.json()["error"]["code"] == "UNAUTHORIZED"
    get_config.cache_clear()


def test_assign_with_missing_database_keeps_previous_rules(client: TestClient, isolated_local_db: Path) -> None:
    engine = client.app.state.policy_engine
    generation = engine.describe()["generation"]
    isolated_local_db.unlink()

    response = client.post(f"{PERMISSIONS_PATH}/assign", data={"user": "bob@example.com", "role": "editor"})
    assert response.status_code == 303
    assert response.headers["location"] == PERMISSIONS_PATH

    payload = _index(client)
    assert len(payload["flashes"]) == 1
    assert payload["flashes"][0]["level"] == "error"
    assert payload["flashes"][0]["message"].startswith("Could not assign role:")
    assert "bob@example.com" not in payload["user_roles"]
    assert engine.describe()["generation"] == generation
    assert engine.enforce("admin@example.com", "guns", "delete") is True


def test_assign_reports_saved_change_when_reload_fails(
    client: TestClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    engine = client.app.state.policy_engine
    generation = engine.describe()["generation"]

    def _unreadable():
        raise DataConnectionError("rule table unreadable")

    monkeypatch.setattr(engine.adapter, "load_all_rules", _unreadable)

    response = client.post(f"{PERMISSIONS_PATH}/assign", data={"user": "bob@example.com", "role": "editor"})
    assert response.status_code == 303
    assert response.headers["location"] == PERMISSIONS_PATH

    payload = _index(client)
    assert payload["flashes"] == [{"message": RELOAD_FAILED_MESSAGE, "level": "error"}]
    assert "bob@example.com" not in payload["user_roles"]
    assert engine.describe()["generation"] == generation
    assert engine.has_role("bob@example.com", "editor") is False
    assert engine.enforce("admin@example.com", "guns", "delete") is True
    assert engine.adapter.has_rule(GroupingRule("bob@example.com", "editor")) is True


def test_create_role_reports_saved_change_when_reload_times_out(
    client: TestClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    engine = client.app.state.policy_engine
    generation = engine.describe()["generation"]
    slow_rules = engine.adapter.load_all_rules

    def _slow_load():
        time.sleep(0.5)
        return slow_rules()

    monkeypatch.setattr(engine, "load_timeout_sec", 0.05)
    monkeypatch.setattr(engine.adapter, "load_all_rules", _slow_load)

    response = client.post(f"{PERMISSIONS_PATH}/roles", data={"role": "auditor", "permissions": ["payments:read"]})
    assert response.status_code == 303

    payload = _index(client)
    assert payload["flashes"] == [{"message": RELOAD_FAILED_MESSAGE, "level": "error"}]
    assert "auditor" not in payload["roles"]
    assert engine.describe()["generation"] == generation
    assert engine.role_exists("auditor") is False
    assert engine.enforce("admin@example.com", "payments", "read") is True


def test_reload_failure_keeps_previous_snapshot(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    engine = client.app.state.policy_engine
    generation = engine.describe()["generation"]

    def _unreadable():
        raise DataConnectionError("rule table unreadable")

    monkeypatch.setattr(engine.adapter, "load_all_rules", _unreadable)

    response = client.post(f"{PERMISSIONS_PATH}/reload")
    assert response.status_code == 303
    assert response.headers["location"] == PERMISSIONS_PATH

    payload = _index(client)
    assert len(payload["flashes"]) == 1
    assert payload["flashes"][0]["level"] == "error"
    assert payload["flashes"][0]["message"].startswith("Policy reload failed; previous rules remain active.")
    assert payload["engine"]["generation"] == generation
    assert engine.enforce("admin@example.com", "guns", "delete") is True
