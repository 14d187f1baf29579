"""
addon_store.operations — State transitions on a tenant's StoreBundle.

Invariants kept by every mutation here:
  - an Attachment always references an existing Resource
  - a config var KEY_URL exists on an app iff an Attachment with that
    name exists on the app; both are written and removed together
  - every config var add/remove appends exactly one Release per app touched
  - deleting a Resource removes its Attachments and their config vars first

Each operation validates all preconditions before the first write and then
runs to completion, so a typed error (NotFound, Conflict, MalformedRequest)
never leaves a partial mutation behind.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime

from aws_lambda_powertools import Logger

from addon_store.exceptions import Conflict, MalformedRequest, NotFound
from addon_store.identifiers import IdentifierGenerator
from addon_store.models import (
    DEFAULT_PLAN,
    App,
    Attachment,
    Release,
    Resource,
    StoreBundle,
    config_var_key,
    normalize_attachment_name,
)

logger = Logger(service="addon-operations")

UUID_PATTERN = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.I)
RESOURCE_NAME_PATTERN = re.compile(r"^@?([a-z][a-z0-9-]+)$")
SERVICE_PLAN_PATTERN = re.compile(r"^(?:([a-z0-9_-]+):)?([a-z0-9_-]+)$")
ATTACHMENT_NAME_PATTERN = re.compile(r"^[A-Z][A-Z0-9_]*$")

_MAX_NAME_ATTEMPTS = 20

# Services whose first attachment conventionally gets a role name rather
# than the service name.
_CONVENTIONAL_ATTACHMENT_NAMES = {
    "heroku-postgresql": "DATABASE",
    "postgres": "DATABASE",
    "postgresql": "DATABASE",
    "heroku-redis": "REDIS",
    "redis": "REDIS",
}


def _now_utc() -> datetime:
    return datetime.now(UTC)


def _iso(dt: datetime) -> str:
    return dt.replace(microsecond=0).isoformat().replace("+00:00", "Z")


# ---------------------------------------------------------------------------
# Name handling
# ---------------------------------------------------------------------------


def normalize_service_plan(plan: str, *, current_service: str | None = None) -> str:
    """Return plan as "service:plan".

    A bare token names the service on create (plan defaults) and the plan of
    current_service on upgrade/downgrade.
    """
    text = plan.strip().lower()
    match = SERVICE_PLAN_PATTERN.match(text)
    if match is None:
        raise MalformedRequest(f"Invalid add-on plan {plan!r}")
    service, plan_name = match.group(1), match.group(2)
    if service is not None:
        return f"{service}:{plan_name}"
    if current_service is not None:
        return f"{current_service}:{plan_name}"
    return f"{plan_name}:{DEFAULT_PLAN}"


def default_attachment_name(service: str) -> str:
    return _CONVENTIONAL_ATTACHMENT_NAMES.get(service, normalize_attachment_name(service))


def _validated_attachment_name(name: str) -> str:
    text = name.strip()
    if not ATTACHMENT_NAME_PATTERN.match(normalize_attachment_name(text)):
        raise MalformedRequest(f"Invalid attachment name {name!r}")
    return text


def _validated_resource_name(name: str) -> str:
    match = RESOURCE_NAME_PATTERN.match(name.strip().lower())
    if match is None:
        raise MalformedRequest(f"Invalid add-on name {name!r}")
    return match.group(1)


# ---------------------------------------------------------------------------
# Reads: never mutate; unknown apps yield empty results
# ---------------------------------------------------------------------------


def find_app(bundle: StoreBundle, identifier: str) -> App | None:
    for app in bundle.apps.values():
        if identifier in (app.id, app.name):
            return app
    return None


def lookup_resources(
    bundle: StoreBundle,
    predicate: Callable[[Resource], bool] | None = None,
) -> list[Resource]:
    return [r for r in bundle.resources.values() if predicate is None or predicate(r)]


def lookup_attachments(
    bundle: StoreBundle,
    app: App | None = None,
    predicate: Callable[[Attachment], bool] | None = None,
) -> list[Attachment]:
    return [
        a
        for a in bundle.attachments.values()
        if (app is None or a.app_ref == app.id) and (predicate is None or predicate(a))
    ]


def resources_for_app(bundle: StoreBundle, app: App) -> list[Resource]:
    """Resources owned by the app plus resources attached to it from elsewhere."""
    attached = {a.resource_ref for a in lookup_attachments(bundle, app)}
    return lookup_resources(bundle, lambda r: r.app_ref == app.id or r.id in attached)


def find_resource(bundle: StoreBundle, identifier: str) -> Resource:
    """Resolve a resource by id, name or @name."""
    text = identifier.strip()
    if UUID_PATTERN.match(text):
        resource = bundle.resources.get(text.lower())
        if resource is not None:
            return resource
    name = text.removeprefix("@").lower()
    for resource in bundle.resources.values():
        if resource.name == name:
            return resource
    raise NotFound(f"Add-on {identifier!r} not found")


def get_attachment(bundle: StoreBundle, attachment_id: str) -> Attachment:
    attachment = bundle.attachments.get(attachment_id.strip().lower())
    if attachment is None:
        raise NotFound(f"Add-on attachment {attachment_id!r} not found")
    return attachment


def find_attachment(bundle: StoreBundle, app: App | None, identifier: str) -> Attachment:
    """Resolve an attachment on an app by id, exact name or normalised name."""
    if app is not None:
        text = identifier.strip()
        key = config_var_key(text)
        for attachment in lookup_attachments(bundle, app):
            if text in (attachment.id, attachment.name) or attachment.config_var_key == key:
                return attachment
    raise NotFound(f"Add-on attachment {identifier!r} not found")


def config_vars_for(bundle: StoreBundle, app: App | None) -> dict[str, str]:
    if app is None:
        return {}
    return dict(bundle.config_vars.get(app.id, {}))


def config_var_keys_for_resource(bundle: StoreBundle, resource: Resource) -> list[str]:
    return [
        a.config_var_key
        for a in lookup_attachments(bundle, predicate=lambda a: a.resource_ref == resource.id)
    ]


def releases_for(bundle: StoreBundle, app: App | None) -> list[Release]:
    if app is None:
        return []
    return list(bundle.releases.get(app.id, []))


def get_release(bundle: StoreBundle, app: App | None, identifier: str) -> Release:
    """Resolve "current", "v<N>" or "<N>" on an app."""
    releases = releases_for(bundle, app)
    text = identifier.strip().lower()
    if text == "current":
        if releases:
            return releases[-1]
    else:
        version = text.removeprefix("v")
        for release in releases:
            if str(release.version) == version:
                return release
    raise NotFound(f"Release {identifier!r} not found")


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


def ensure_app(bundle: StoreBundle, identifier: str, *, ids: IdentifierGenerator) -> App:
    """Return the app named/identified, creating a minimal record if absent."""
    app = find_app(bundle, identifier)
    if app is None:
        app = App(id=ids.unique_id(), name=identifier)
        bundle.apps[app.id] = app
    return app


def append_release(bundle: StoreBundle, app_id: str, descr: str) -> Release:
    releases = bundle.releases.setdefault(app_id, [])
    version = releases[-1].version + 1 if releases else 1
    release = Release(version=version, descr=descr, created_at=_iso(_now_utc()))
    releases.append(release)
    return release


def _unique_resource_name(bundle: StoreBundle, ids: IdentifierGenerator) -> str:
    taken = {r.name for r in bundle.resources.values()}
    for _ in range(_MAX_NAME_ATTEMPTS):
        candidate = ids.resource_name()
        if candidate not in taken:
            return candidate
    raise Conflict("Could not generate an unused add-on name")


def _conflicting_attachments(bundle: StoreBundle, app: App | None, name: str) -> list[Attachment]:
    if app is None:
        return []
    key = config_var_key(name)
    return lookup_attachments(bundle, app, lambda a: a.config_var_key == key)


def _attach(
    bundle: StoreBundle,
    *,
    app: App,
    resource: Resource,
    name: str,
    ids: IdentifierGenerator,
) -> Attachment:
    """Bind resource into app, replacing any same-named attachment there."""
    for previous in _conflicting_attachments(bundle, app, name):
        del bundle.attachments[previous.id]
    now = _iso(_now_utc())
    attachment = Attachment(
        id=ids.unique_id(),
        name=name,
        resource_ref=resource.id,
        app_ref=app.id,
        created_at=now,
        updated_at=now,
    )
    bundle.attachments[attachment.id] = attachment
    bundle.config_vars.setdefault(app.id, {})[attachment.config_var_key] = resource.config_var_value
    append_release(bundle, app.id, f"Add-on resource add {resource.service}/{resource.name}")
    return attachment


def create_resource(
    bundle: StoreBundle,
    *,
    app: str,
    plan: str,
    ids: IdentifierGenerator,
    name: str | None = None,
    attachment_name: str | None = None,
    force: bool = False,
) -> tuple[Resource, Attachment]:
    """Provision a resource on app together with its default attachment.

    Raises Conflict when the requested resource name is taken, or when the
    attachment name is already used on the app and force is not set.
    """
    service_plan = normalize_service_plan(plan)
    existing_app = find_app(bundle, app)

    if name is not None:
        resource_name = _validated_resource_name(name)
        if any(r.name == resource_name for r in bundle.resources.values()):
            raise Conflict(f"Add-on {resource_name!r} already exists")
    else:
        resource_name = _unique_resource_name(bundle, ids)

    service = service_plan.split(":", 1)[0]
    if attachment_name is not None:
        attach_as = _validated_attachment_name(attachment_name)
    else:
        attach_as = default_attachment_name(service)
    if _conflicting_attachments(bundle, existing_app, attach_as) and not force:
        raise Conflict(f"Attachment {attach_as!r} already exists on {app!r}")

    app_record = existing_app or ensure_app(bundle, app, ids=ids)
    now = _iso(_now_utc())
    resource = Resource(
        id=ids.unique_id(),
        name=resource_name,
        service_plan=service_plan,
        app_ref=app_record.id,
        created_at=now,
        updated_at=now,
    )
    bundle.resources[resource.id] = resource
    attachment = _attach(bundle, app=app_record, resource=resource, name=attach_as, ids=ids)
    logger.info(
        "Add-on resource created",
        extra={"resource_id": resource.id, "resource_name": resource.name, "app": app},
    )
    return resource, attachment


def create_attachment(
    bundle: StoreBundle,
    *,
    app: str,
    resource: str,
    ids: IdentifierGenerator,
    name: str | None = None,
    force: bool = False,
) -> Attachment:
    """Attach an existing resource to app.

    With force, a same-named attachment on the app is replaced and only one
    release is appended for the swap.
    """
    resource_record = find_resource(bundle, resource)
    if name is not None:
        attach_as = _validated_attachment_name(name)
    else:
        attach_as = default_attachment_name(resource_record.service)

    existing_app = find_app(bundle, app)
    if _conflicting_attachments(bundle, existing_app, attach_as) and not force:
        raise Conflict(f"Attachment {attach_as!r} already exists on {app!r}")

    app_record = existing_app or ensure_app(bundle, app, ids=ids)
    attachment = _attach(bundle, app=app_record, resource=resource_record, name=attach_as, ids=ids)
    logger.info(
        "Add-on attachment created",
        extra={"attachment_id": attachment.id, "attachment_name": attach_as, "app": app},
    )
    return attachment


def _detach(bundle: StoreBundle, attachment: Attachment) -> None:
    del bundle.attachments[attachment.id]
    app_vars = bundle.config_vars.get(attachment.app_ref)
    if app_vars is not None:
        app_vars.pop(attachment.config_var_key, None)


def delete_attachment(bundle: StoreBundle, attachment: Attachment) -> Attachment:
    if attachment.id not in bundle.attachments:
        raise NotFound(f"Add-on attachment {attachment.id!r} not found")
    _detach(bundle, attachment)
    append_release(bundle, attachment.app_ref, f"Add-on resource remove {attachment.name}")
    logger.info("Add-on attachment removed", extra={"attachment_id": attachment.id})
    return attachment


def delete_attachment_by_name(bundle: StoreBundle, *, app: str, name: str) -> Attachment:
    attachment = find_attachment(bundle, find_app(bundle, app), name)
    return delete_attachment(bundle, attachment)


def delete_resource(bundle: StoreBundle, resource_id: str) -> Resource:
    """Destroy a resource, cascading to its attachments and config vars.

    One release is appended per distinct app that lost config vars.
    """
    resource = bundle.resources.get(resource_id)
    if resource is None:
        raise NotFound(f"Add-on {resource_id!r} not found")

    removed_by_app: dict[str, list[str]] = {}
    for attachment in lookup_attachments(bundle, predicate=lambda a: a.resource_ref == resource.id):
        _detach(bundle, attachment)
        removed_by_app.setdefault(attachment.app_ref, []).append(attachment.name)
    for app_id, names in removed_by_app.items():
        append_release(bundle, app_id, f"Add-on resource remove {', '.join(names)}")

    del bundle.resources[resource.id]
    logger.info(
        "Add-on resource destroyed",
        extra={"resource_id": resource.id, "apps_released": len(removed_by_app)},
    )
    return resource


def update_resource(
    bundle: StoreBundle,
    resource_id: str,
    *,
    plan: str | None = None,
    name: str | None = None,
) -> Resource:
    """Upgrade/downgrade the plan and/or rename a resource.

    The service itself cannot change.  A rename rewrites the "@service/name"
    values of the resource's config vars; neither change appends a release.
    """
    resource = bundle.resources.get(resource_id)
    if resource is None:
        raise NotFound(f"Add-on {resource_id!r} not found")

    service_plan = resource.service_plan
    if plan is not None:
        service_plan = normalize_service_plan(plan, current_service=resource.service)
        if service_plan.split(":", 1)[0] != resource.service:
            raise MalformedRequest(
                f"Cannot change {resource.name!r} from {resource.service!r} to another service"
            )
    new_name = resource.name
    if name is not None:
        new_name = _validated_resource_name(name)
        if any(r.name == new_name and r.id != resource.id for r in bundle.resources.values()):
            raise Conflict(f"Add-on {new_name!r} already exists")

    updated = replace(
        resource,
        name=new_name,
        service_plan=service_plan,
        updated_at=_iso(_now_utc()),
    )
    bundle.resources[resource.id] = updated
    if new_name != resource.name:
        for attachment in lookup_attachments(
            bundle, predicate=lambda a: a.resource_ref == resource.id
        ):
            app_vars = bundle.config_vars.setdefault(attachment.app_ref, {})
            app_vars[attachment.config_var_key] = updated.config_var_value
    logger.info(
        "Add-on resource updated",
        extra={"resource_id": resource.id, "service_plan": service_plan, "resource_name": new_name},
    )
    return updated
