from __future__ import annotations

import base64
import json
import random
from pathlib import Path
from typing import Any

import pytest
from addon_api import handler as addon_api_handler
from addon_api.router import ApiDependencies, Request, Response, Router
from addon_store import CorruptDurableState, IdentifierGenerator, LocalFileBlobStore, TenantStore

API_KEY = "01234567-89ab-cdef-0123-456789abcdef"
OTHER_API_KEY = "fedcba98-7654-3210-fedc-ba9876543210"


class FakeLambdaContext:
    function_name = "addon-mock-api"
    memory_limit_in_mb = 256
    invoked_function_arn = "arn:aws:lambda:eu-west-2:111111111111:function:addon-mock-api"
    aws_request_id = "req-123"


def _auth(api_key: str) -> dict[str, str]:
    token = base64.b64encode(f":{api_key}".encode()).decode("ascii")
    return {"Authorization": f"Basic {token}"}


@pytest.fixture
def store(tmp_path: Path) -> TenantStore:
    return TenantStore(LocalFileBlobStore(), str(tmp_path / "state.json"))


@pytest.fixture
def router() -> Router:
    return addon_api_handler.build_router(ApiDependencies(ids=IdentifierGenerator(random.Random(7))))


@pytest.fixture
def call(router: Router, store: TenantStore):
    def _call(
        method: str,
        path: str,
        body: dict[str, Any] | str | None = None,
        *,
        api_key: str = API_KEY,
    ) -> Response:
        raw = json.dumps(body).encode("utf-8") if isinstance(body, dict) else body
        return router.dispatch(Request(method, path, _auth(api_key), raw), store)

    return _call


def _provision_db1(call) -> dict[str, Any]:
    response = call("POST", "/apps/shop/addons", {"plan": {"name": "postgres"}, "name": "db1"})
    assert response.status == 201
    return response.body


# ---------------------------------------------------------------------------
# Add-on resources
# ---------------------------------------------------------------------------


def test_provision_creates_resource_attachment_config_var_and_release(call) -> None:
    body = _provision_db1(call)

    assert body["name"] == "db1"
    assert body["addon_service"] == {"name": "postgres"}
    assert body["plan"] == {"name": "postgres:default"}
    assert body["app"]["name"] == "shop"
    assert body["config_vars"] == ["DATABASE_URL"]

    assert call("GET", "/apps/shop/config-vars").body == {"DATABASE_URL": "@postgres/db1"}
    releases = call("GET", "/apps/shop/releases").body
    assert [r["name"] for r in releases] == ["v1"]
    assert releases[0]["description"] == "Add-on resource add postgres/db1"
    attachments = call("GET", "/apps/shop/addon-attachments").body
    assert [a["name"] for a in attachments] == ["DATABASE"]
    assert attachments[0]["addon"] == {"id": body["id"], "name": "db1"}


def test_provision_through_resources_collection(call) -> None:
    response = call(
        "POST",
        "/resources",
        {"app": {"name": "shop"}, "plan": {"name": "heroku-redis:mini"}, "attachment": {}},
    )

    assert response.status == 201
    assert response.body["plan"] == {"name": "heroku-redis:mini"}
    assert response.body["config_vars"] == ["REDIS_URL"]
    assert len(call("GET", "/resources").body) == 1


def test_provision_with_attachment_name(call) -> None:
    response = call(
        "POST",
        "/apps/shop/addons",
        {"plan": {"name": "postgres"}, "attachment": {"name": "analytics-db"}},
    )
    assert response.body["config_vars"] == ["ANALYTICS_DB_URL"]


def test_provision_lowercases_resource_name(call) -> None:
    response = call("POST", "/apps/shop/addons", {"plan": {"name": "postgres"}, "name": "DB1"})

    assert response.status == 201
    assert response.body["name"] == "db1"
    assert call("GET", "/apps/shop/addons/@DB1").body["name"] == "db1"
    assert call("POST", "/apps/shop/addons", {"plan": {"name": "redis"}, "name": "a"}).status == 400


def test_mistyped_persisted_release_aborts_before_any_write(tmp_path: Path, router: Router) -> None:
    state_path = tmp_path / "state.json"
    raw = json.dumps(
        {
            API_KEY: {
                "apps": [{"id": "a1", "name": "shop"}],
                "releases": {
                    "a1": [{"version": "1", "descr": "x", "created_at": "2026-01-01T00:00:00Z"}]
                },
            }
        }
    ).encode("utf-8")
    state_path.write_bytes(raw)
    store = TenantStore(LocalFileBlobStore(), str(state_path))

    with pytest.raises(CorruptDurableState):
        router.dispatch(
            Request("POST", "/apps/shop/addons", _auth(API_KEY), b'{"plan": {"name": "postgres"}}'),
            store,
        )

    assert state_path.read_bytes() == raw


def test_list_and_read_resources(call) -> None:
    created = _provision_db1(call)

    assert [r["id"] for r in call("GET", "/apps/shop/addons").body] == [created["id"]]
    assert call("GET", "/apps/shop/addons/db1").body == created
    assert call("GET", "/addons/@db1").body == created
    assert call("GET", f"/resources/{created['id']}").body == created
    assert [r["name"] for r in call("GET", "/addons").body] == ["db1"]


def test_reads_for_unknown_app_are_empty(call) -> None:
    assert call("GET", "/apps/nowhere/addons") == Response(200, [])
    assert call("GET", "/apps/nowhere/addon-attachments") == Response(200, [])
    assert call("GET", "/apps/nowhere/config-vars") == Response(200, {})
    assert call("GET", "/apps/nowhere/releases") == Response(200, [])


def test_resource_not_on_app_is_404(call) -> None:
    _provision_db1(call)
    call("POST", "/apps/blog/addons", {"plan": {"name": "redis"}})

    response = call("GET", "/apps/blog/addons/db1")

    assert response.status == 404
    assert response.body["error"]["code"] == "NOT_FOUND"


def test_duplicate_attachment_name_is_409_then_replaced_with_confirm(call) -> None:
    _provision_db1(call)

    conflict = call("POST", "/apps/shop/addons", {"plan": {"name": "postgres"}, "name": "db2"})
    assert conflict.status == 409
    assert conflict.body["error"]["code"] == "CONFLICT"
    assert len(call("GET", "/resources").body) == 1

    replaced = call(
        "POST",
        "/apps/shop/addons",
        {"plan": {"name": "postgres"}, "name": "db2", "confirm": True},
    )
    assert replaced.status == 201
    assert call("GET", "/apps/shop/config-vars").body == {"DATABASE_URL": "@postgres/db2"}
    assert len(call("GET", "/apps/shop/releases").body) == 2


@pytest.mark.parametrize(
    ("body", "message"),
    [
        ("not json at all", "Request body must be a JSON object"),
        (None, "Request body must be a JSON object"),
        ({"name": "db1"}, "plan: Field required"),
        ({"plan": {"name": "Not A Plan"}}, "Invalid add-on plan 'Not A Plan'"),
    ],
)
def test_malformed_create_is_400(call, body: Any, message: str) -> None:
    response = call("POST", "/apps/shop/addons", body)

    assert response.status == 400
    assert response.body == {"error": {"code": "BAD_REQUEST", "message": message}}
    assert call("GET", "/resources").body == []


def test_update_plan_and_rename(call) -> None:
    _provision_db1(call)

    upgraded = call("PATCH", "/apps/shop/addons/db1", {"plan": {"name": "standard-0"}})
    assert upgraded.status == 200
    assert upgraded.body["plan"] == {"name": "postgres:standard-0"}

    renamed = call("PATCH", "/apps/shop/addons/db1", {"name": "orders-db"})
    assert renamed.body["name"] == "orders-db"
    assert call("GET", "/apps/shop/config-vars").body == {"DATABASE_URL": "@postgres/orders-db"}
    assert len(call("GET", "/apps/shop/releases").body) == 1


def test_update_rejects_empty_body_and_service_change(call) -> None:
    _provision_db1(call)

    empty = call("PATCH", "/apps/shop/addons/db1", {})
    assert empty.status == 400
    assert "plan or name is required" in empty.body["error"]["message"]

    switched = call("PATCH", "/apps/shop/addons/db1", {"plan": {"name": "redis:mini"}})
    assert switched.status == 400
    assert call("GET", "/addons/db1").body["plan"] == {"name": "postgres:default"}


def test_delete_resource_cascades_and_returns_prior_state(call) -> None:
    created = _provision_db1(call)
    call("POST", "/addon-attachments", {"app": {"name": "admin"}, "addon": {"name": "db1"}})

    response = call("DELETE", "/apps/shop/addons/db1")

    assert response.status == 200
    assert response.body["id"] == created["id"]
    assert response.body["config_vars"] == ["DATABASE_URL", "DATABASE_URL"]
    assert call("GET", "/resources").body == []
    assert call("GET", "/addon-attachments").body == []
    assert call("GET", "/apps/shop/config-vars").body == {}
    assert call("GET", "/apps/admin/config-vars").body == {}
    assert [r["version"] for r in call("GET", "/apps/shop/releases").body] == [1, 2]
    assert [r["version"] for r in call("GET", "/apps/admin/releases").body] == [1, 2]
    assert call("DELETE", f"/resources/{created['id']}").status == 404


# ---------------------------------------------------------------------------
# Add-on attachments
# ---------------------------------------------------------------------------


def test_attach_existing_resource_to_another_app(call) -> None:
    created = _provision_db1(call)

    response = call(
        "POST",
        "/addon-attachments",
        {"app": {"name": "admin"}, "addon": {"name": "db1"}, "name": "SHOP_DB"},
    )

    assert response.status == 201
    assert response.body["name"] == "SHOP_DB"
    assert response.body["addon"] == {"id": created["id"], "name": "db1"}
    assert response.body["app"]["name"] == "admin"
    assert call("GET", "/apps/admin/config-vars").body == {"SHOP_DB_URL": "@postgres/db1"}
    assert [r["name"] for r in call("GET", "/apps/admin/addons").body] == ["db1"]
    assert call(
        "GET", f"/addon-attachments/{response.body['id']}"
    ).body == response.body


def test_attach_conflict_then_confirm(call) -> None:
    _provision_db1(call)
    call("POST", "/apps/admin/addons", {"plan": {"name": "postgres"}, "name": "db2"})
    request = {"app": {"name": "shop"}, "addon": {"name": "db2"}, "name": "DATABASE"}

    assert call("POST", "/addon-attachments", request).status == 409

    replaced = call("POST", "/addon-attachments", {**request, "confirm": True})
    assert replaced.status == 201
    shop_attachments = call("GET", "/apps/shop/addon-attachments").body
    assert [a["id"] for a in shop_attachments] == [replaced.body["id"]]
    assert len(call("GET", "/apps/shop/releases").body) == 2


def test_attach_unknown_resource_is_404(call) -> None:
    response = call("POST", "/addon-attachments", {"app": {"name": "shop"}, "addon": {"name": "x1"}})
    assert response.status == 404


def test_attach_nested_resource_reference_is_400(call) -> None:
    _provision_db1(call)
    response = call(
        "POST", "/addon-attachments", {"app": {"name": "admin"}, "resource": {"name": "db1"}}
    )
    assert response.status == 400
    assert response.body["error"]["message"] == "addon: Field required"


def test_delete_attachment_by_app_and_name(call) -> None:
    _provision_db1(call)

    response = call("DELETE", "/apps/shop/addon-attachments/DATABASE")

    assert response.status == 200
    assert response.body["name"] == "DATABASE"
    assert call("GET", "/apps/shop/config-vars").body == {}
    assert call("GET", "/apps/shop/releases/current").body["description"] == (
        "Add-on resource remove DATABASE"
    )
    # the resource outlives its last attachment
    assert call("GET", "/addons/db1").status == 200


def test_delete_missing_attachment_is_404_and_appends_no_release(call) -> None:
    _provision_db1(call)

    response = call("DELETE", "/apps/shop/addon-attachments/REDIS")

    assert response.status == 404
    assert len(call("GET", "/apps/shop/releases").body) == 1


def test_read_and_delete_attachment_by_id(call) -> None:
    _provision_db1(call)
    attachment = call("GET", "/apps/shop/addon-attachments/database").body

    deleted = call("DELETE", f"/addon-attachments/{attachment['id']}")

    assert deleted == Response(200, attachment)
    assert call("GET", f"/addon-attachments/{attachment['id']}").status == 404


# ---------------------------------------------------------------------------
# Releases, tenants and routing
# ---------------------------------------------------------------------------


def test_read_release_by_version(call) -> None:
    _provision_db1(call)
    call("POST", "/apps/shop/addons", {"plan": {"name": "redis"}})

    assert call("GET", "/apps/shop/releases/v1").body["version"] == 1
    assert call("GET", "/apps/shop/releases/current").body["name"] == "v2"
    assert call("GET", "/apps/shop/releases/v3").status == 404


def test_tenants_do_not_see_each_other(call) -> None:
    _provision_db1(call)

    assert call("GET", "/resources", api_key=OTHER_API_KEY).body == []
    assert call("GET", "/addons/db1", api_key=OTHER_API_KEY).status == 404
    created = call(
        "POST",
        "/apps/shop/addons",
        {"plan": {"name": "postgres"}, "name": "db1"},
        api_key=OTHER_API_KEY,
    )
    assert created.status == 201


def test_unknown_route_and_missing_credentials(router: Router, store: TenantStore, call) -> None:
    assert call("GET", "/nope").status == 404
    response = router.dispatch(Request("GET", "/resources"), store)
    assert response.status == 401


def test_route_table_covers_every_endpoint() -> None:
    templates = {(m, t) for m, t, _ in addon_api_handler.ROUTES}
    assert len(templates) == len(addon_api_handler.ROUTES)
    assert ("DELETE", "/apps/{app}/addon-attachments/{attachment}") in templates
    assert ("PATCH", "/apps/{app}/addons/{addon}") in templates


# ---------------------------------------------------------------------------
# API Gateway adapter
# ---------------------------------------------------------------------------


@pytest.fixture
def state_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    state_path = tmp_path / "lambda-state.json"
    monkeypatch.setenv("ADDON_MOCK_STATE_PATH", str(state_path))
    monkeypatch.delenv("ADDON_MOCK_STATE_BUCKET", raising=False)
    return state_path


def _event(method: str, path: str, body: str | None = None, **extra: Any) -> dict[str, Any]:
    return {"httpMethod": method, "path": path, "headers": _auth(API_KEY), "body": body, **extra}


def test_lambda_handler_persists_between_invocations(state_env: Path) -> None:
    created = addon_api_handler.lambda_handler(
        _event("POST", "/apps/shop/addons", json.dumps({"plan": {"name": "postgres"}})),
        FakeLambdaContext(),
    )

    assert created["statusCode"] == 201
    assert created["headers"]["Content-Type"] == "application/json"
    assert json.loads(created["body"])["config_vars"] == ["DATABASE_URL"]
    assert state_env.exists()

    listed = addon_api_handler.lambda_handler(
        _event("GET", "/apps/shop/config-vars"), FakeLambdaContext()
    )
    assert json.loads(listed["body"])["DATABASE_URL"].startswith("@postgres/")


def test_lambda_handler_decodes_base64_body_and_http_api_shape(state_env: Path) -> None:
    raw = json.dumps({"plan": {"name": "redis"}, "name": "cache1"}).encode("utf-8")
    event = {
        "rawPath": "/apps/shop/addons",
        "requestContext": {"http": {"method": "POST", "path": "/apps/shop/addons"}},
        "headers": _auth(API_KEY),
        "body": base64.b64encode(raw).decode("ascii"),
        "isBase64Encoded": True,
    }

    response = addon_api_handler.lambda_handler(event, FakeLambdaContext())

    assert response["statusCode"] == 201
    assert json.loads(response["body"])["name"] == "cache1"


def test_lambda_handler_unauthenticated(state_env: Path) -> None:
    event = _event("GET", "/resources")
    event["headers"] = {}
    response = addon_api_handler.lambda_handler(event, FakeLambdaContext())
    assert response["statusCode"] == 401
    assert json.loads(response["body"])["error"]["code"] == "UNAUTHORIZED"


def test_proxy_response_shapes_bodies() -> None:
    assert addon_api_handler._proxy_response(Response(204))["body"] == ""
    assert addon_api_handler._proxy_response(Response(200, b"raw"))["body"] == "raw"
    assert addon_api_handler._proxy_response(Response(200, "text"))["body"] == "text"
    assert json.loads(addon_api_handler._proxy_response(Response(200, [1]))["body"]) == [1]
