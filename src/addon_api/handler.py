"""
addon_api.handler — Route table and handlers for the mock add-on platform.

Entry points:
    dispatch(request, store)        in-process contract used by the CLI tests
    lambda_handler(event, context)  API Gateway proxy adapter

Handlers parse one request shape per endpoint (addon_api.schemas), run the
addon_store operations against the caller's StoreBundle and serialise the
result.  They never catch AddonErrors themselves; the Router maps those.
"""

from __future__ import annotations

import base64
import json
from typing import Any

from addon_store import (
    App,
    Attachment,
    NotFound,
    Release,
    Resource,
    StoreBundle,
    TenantStore,
    blob_store_from_env,
    scoped_store,
)
from addon_store import operations as ops
from aws_lambda_powertools import Logger

from addon_api.router import ApiDependencies, Request, Response, Router
from addon_api.schemas import (
    AttachmentCreateRequest,
    ResourceCreateRequest,
    ResourceCreateWithAppRequest,
    ResourceUpdateRequest,
    parse_body,
)

logger = Logger(service="addon-api")


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------


def _app_ref(bundle: StoreBundle, app_id: str) -> dict[str, str]:
    app = bundle.apps.get(app_id)
    return {"id": app_id, "name": app.name if app is not None else app_id}


def _serialize_resource(
    bundle: StoreBundle,
    resource: Resource,
    *,
    config_vars: list[str] | None = None,
) -> dict[str, Any]:
    if config_vars is None:
        config_vars = ops.config_var_keys_for_resource(bundle, resource)
    return {
        "id": resource.id,
        "name": resource.name,
        "addon_service": {"name": resource.service},
        "plan": {"name": resource.service_plan},
        "app": _app_ref(bundle, resource.app_ref),
        "config_vars": config_vars,
        "created_at": resource.created_at,
        "updated_at": resource.updated_at,
    }


def _serialize_attachment(bundle: StoreBundle, attachment: Attachment) -> dict[str, Any]:
    resource = bundle.resources.get(attachment.resource_ref)
    return {
        "id": attachment.id,
        "name": attachment.name,
        "addon": {
            "id": attachment.resource_ref,
            "name": resource.name if resource is not None else None,
        },
        "app": _app_ref(bundle, attachment.app_ref),
        "created_at": attachment.created_at,
        "updated_at": attachment.updated_at,
    }


def _serialize_release(release: Release) -> dict[str, Any]:
    return {
        "name": release.name,
        "version": release.version,
        "description": release.descr,
        "created_at": release.created_at,
    }


def _require_app(bundle: StoreBundle, identifier: str) -> App:
    app = ops.find_app(bundle, identifier)
    if app is None:
        raise NotFound(f"App {identifier!r} not found")
    return app


def _resource_on_app(bundle: StoreBundle, app_identifier: str, addon: str) -> Resource:
    app = _require_app(bundle, app_identifier)
    resource = ops.find_resource(bundle, addon)
    if resource.id not in {r.id for r in ops.resources_for_app(bundle, app)}:
        raise NotFound(f"Add-on {addon!r} not found on {app.name!r}")
    return resource


# ---------------------------------------------------------------------------
# Add-on resources
# ---------------------------------------------------------------------------


def _handle_list_app_addons(
    request: Request, bundle: StoreBundle, params: dict[str, str], deps: ApiDependencies
) -> Response:
    app = ops.find_app(bundle, params["app"])
    resources = ops.resources_for_app(bundle, app) if app is not None else []
    return Response(200, [_serialize_resource(bundle, r) for r in resources])


def _create_resource(
    bundle: StoreBundle,
    body: ResourceCreateRequest,
    *,
    app: str,
    deps: ApiDependencies,
) -> Response:
    resource, _attachment = ops.create_resource(
        bundle,
        app=app,
        plan=body.plan.name,
        ids=deps.ids,
        name=body.name,
        attachment_name=body.attachment.name if body.attachment is not None else None,
        force=body.confirm,
    )
    return Response(201, _serialize_resource(bundle, resource))


def _handle_create_app_addon(
    request: Request, bundle: StoreBundle, params: dict[str, str], deps: ApiDependencies
) -> Response:
    body = parse_body(ResourceCreateRequest, request.body)
    return _create_resource(bundle, body, app=params["app"], deps=deps)


def _handle_create_resource(
    request: Request, bundle: StoreBundle, params: dict[str, str], deps: ApiDependencies
) -> Response:
    body = parse_body(ResourceCreateWithAppRequest, request.body)
    return _create_resource(bundle, body, app=body.app.name, deps=deps)


def _handle_read_app_addon(
    request: Request, bundle: StoreBundle, params: dict[str, str], deps: ApiDependencies
) -> Response:
    resource = _resource_on_app(bundle, params["app"], params["addon"])
    return Response(200, _serialize_resource(bundle, resource))


def _handle_update_app_addon(
    request: Request, bundle: StoreBundle, params: dict[str, str], deps: ApiDependencies
) -> Response:
    body = parse_body(ResourceUpdateRequest, request.body)
    resource = _resource_on_app(bundle, params["app"], params["addon"])
    updated = ops.update_resource(
        bundle,
        resource.id,
        plan=body.plan.name if body.plan is not None else None,
        name=body.name,
    )
    return Response(200, _serialize_resource(bundle, updated))


def _destroy(bundle: StoreBundle, resource: Resource) -> Response:
    prior = _serialize_resource(bundle, resource)
    ops.delete_resource(bundle, resource.id)
    return Response(200, prior)


def _handle_delete_app_addon(
    request: Request, bundle: StoreBundle, params: dict[str, str], deps: ApiDependencies
) -> Response:
    return _destroy(bundle, _resource_on_app(bundle, params["app"], params["addon"]))


def _handle_list_resources(
    request: Request, bundle: StoreBundle, params: dict[str, str], deps: ApiDependencies
) -> Response:
    return Response(200, [_serialize_resource(bundle, r) for r in ops.lookup_resources(bundle)])


def _handle_read_resource(
    request: Request, bundle: StoreBundle, params: dict[str, str], deps: ApiDependencies
) -> Response:
    resource = ops.find_resource(bundle, params["resource"])
    return Response(200, _serialize_resource(bundle, resource))


def _handle_delete_resource(
    request: Request, bundle: StoreBundle, params: dict[str, str], deps: ApiDependencies
) -> Response:
    return _destroy(bundle, ops.find_resource(bundle, params["resource"]))


# ---------------------------------------------------------------------------
# Add-on attachments
# ---------------------------------------------------------------------------


def _handle_list_app_attachments(
    request: Request, bundle: StoreBundle, params: dict[str, str], deps: ApiDependencies
) -> Response:
    app = ops.find_app(bundle, params["app"])
    attachments = ops.lookup_attachments(bundle, app) if app is not None else []
    return Response(200, [_serialize_attachment(bundle, a) for a in attachments])


def _handle_read_app_attachment(
    request: Request, bundle: StoreBundle, params: dict[str, str], deps: ApiDependencies
) -> Response:
    app = ops.find_app(bundle, params["app"])
    attachment = ops.find_attachment(bundle, app, params["attachment"])
    return Response(200, _serialize_attachment(bundle, attachment))


def _handle_delete_app_attachment(
    request: Request, bundle: StoreBundle, params: dict[str, str], deps: ApiDependencies
) -> Response:
    attachment = ops.delete_attachment_by_name(bundle, app=params["app"], name=params["attachment"])
    return Response(200, _serialize_attachment(bundle, attachment))


def _handle_list_attachments(
    request: Request, bundle: StoreBundle, params: dict[str, str], deps: ApiDependencies
) -> Response:
    return Response(200, [_serialize_attachment(bundle, a) for a in ops.lookup_attachments(bundle)])


def _handle_create_attachment(
    request: Request, bundle: StoreBundle, params: dict[str, str], deps: ApiDependencies
) -> Response:
    body = parse_body(AttachmentCreateRequest, request.body)
    attachment = ops.create_attachment(
        bundle,
        app=body.app.name,
        resource=body.addon.name,
        ids=deps.ids,
        name=body.name,
        force=body.confirm,
    )
    return Response(201, _serialize_attachment(bundle, attachment))


def _handle_read_attachment(
    request: Request, bundle: StoreBundle, params: dict[str, str], deps: ApiDependencies
) -> Response:
    attachment = ops.get_attachment(bundle, params["attachment_id"])
    return Response(200, _serialize_attachment(bundle, attachment))


def _handle_delete_attachment(
    request: Request, bundle: StoreBundle, params: dict[str, str], deps: ApiDependencies
) -> Response:
    attachment = ops.get_attachment(bundle, params["attachment_id"])
    ops.delete_attachment(bundle, attachment)
    return Response(200, _serialize_attachment(bundle, attachment))


# ---------------------------------------------------------------------------
# Derived, read-only views
# ---------------------------------------------------------------------------


def _handle_config_vars(
    request: Request, bundle: StoreBundle, params: dict[str, str], deps: ApiDependencies
) -> Response:
    return Response(200, ops.config_vars_for(bundle, ops.find_app(bundle, params["app"])))


def _handle_list_releases(
    request: Request, bundle: StoreBundle, params: dict[str, str], deps: ApiDependencies
) -> Response:
    releases = ops.releases_for(bundle, ops.find_app(bundle, params["app"]))
    return Response(200, [_serialize_release(r) for r in releases])


def _handle_read_release(
    request: Request, bundle: StoreBundle, params: dict[str, str], deps: ApiDependencies
) -> Response:
    app = ops.find_app(bundle, params["app"])
    return Response(200, _serialize_release(ops.get_release(bundle, app, params["release"])))


ROUTES = (
    ("GET", "/apps/{app}/addons", _handle_list_app_addons),
    ("POST", "/apps/{app}/addons", _handle_create_app_addon),
    ("GET", "/apps/{app}/addons/{addon}", _handle_read_app_addon),
    ("PATCH", "/apps/{app}/addons/{addon}", _handle_update_app_addon),
    ("DELETE", "/apps/{app}/addons/{addon}", _handle_delete_app_addon),
    ("GET", "/addons", _handle_list_resources),
    ("GET", "/addons/{resource}", _handle_read_resource),
    ("GET", "/resources", _handle_list_resources),
    ("POST", "/resources", _handle_create_resource),
    ("GET", "/resources/{resource}", _handle_read_resource),
    ("DELETE", "/resources/{resource}", _handle_delete_resource),
    ("GET", "/apps/{app}/addon-attachments", _handle_list_app_attachments),
    ("GET", "/apps/{app}/addon-attachments/{attachment}", _handle_read_app_attachment),
    ("DELETE", "/apps/{app}/addon-attachments/{attachment}", _handle_delete_app_attachment),
    ("GET", "/addon-attachments", _handle_list_attachments),
    ("POST", "/addon-attachments", _handle_create_attachment),
    ("GET", "/addon-attachments/{attachment_id}", _handle_read_attachment),
    ("DELETE", "/addon-attachments/{attachment_id}", _handle_delete_attachment),
    ("GET", "/apps/{app}/config-vars", _handle_config_vars),
    ("GET", "/apps/{app}/releases", _handle_list_releases),
    ("GET", "/apps/{app}/releases/{release}", _handle_read_release),
)


def build_router(deps: ApiDependencies | None = None) -> Router:
    router = Router(deps)
    for method, template, handler in ROUTES:
        router.register(method, template, handler)
    return router


_router = build_router()


def dispatch(request: Request, store: TenantStore) -> Response:
    return _router.dispatch(request, store)


# ---------------------------------------------------------------------------
# API Gateway adapter
# ---------------------------------------------------------------------------


def _http_method(event: dict[str, Any]) -> str:
    method = event.get("httpMethod")
    if not method:
        method = event.get("requestContext", {}).get("http", {}).get("method")
    return str(method or "").upper()


def _request_path(event: dict[str, Any]) -> str:
    path = event.get("path")
    if not path:
        path = event.get("rawPath") or event.get("requestContext", {}).get("http", {}).get("path")
    return str(path or "/")


def _request_from_event(event: dict[str, Any]) -> Request:
    body = event.get("body")
    if body is not None and event.get("isBase64Encoded"):
        body = base64.b64decode(body)
    return Request(
        method=_http_method(event),
        path=_request_path(event),
        headers=event.get("headers") or {},
        body=body,
    )


def _proxy_response(response: Response) -> dict[str, Any]:
    body = response.body
    if body is None:
        text = ""
    elif isinstance(body, bytes):
        text = body.decode("utf-8", errors="replace")
    elif isinstance(body, str):
        text = body
    else:
        text = json.dumps(body)
    return {
        "statusCode": response.status,
        "headers": {"Content-Type": "application/json"},
        "body": text,
    }


@logger.inject_lambda_context(clear_state=True, log_event=False)
def lambda_handler(event: dict[str, Any], _context: Any) -> dict[str, Any]:
    blob_store, path = blob_store_from_env()
    with scoped_store(blob_store, path) as store:
        response = dispatch(_request_from_event(event), store)
    return _proxy_response(response)
