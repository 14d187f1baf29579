"""
addon_store.models — Entity records held by the mock add-on platform.

Entities (all partitioned per tenant key inside a StoreBundle):
    App         — minimal app record, created on first reference
    Resource    — a provisioned add-on instance
    Attachment  — a named binding of a Resource into one app's config
    Release     — append-only audit entry per app config change
Config vars are not a record type: they live in StoreBundle.config_vars as
{app_id: {KEY_URL: "@service/resource"}} and are only written alongside
Attachments.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any, TypeVar

CONFIG_VAR_SUFFIX = "_URL"
DEFAULT_PLAN = "default"

RecordT = TypeVar("RecordT")


def normalize_attachment_name(name: str) -> str:
    """Uppercase a name and replace dashes with underscores (DATABASE, HEROKU_REDIS)."""
    return name.strip().replace("-", "_").upper()


def config_var_key(attachment_name: str) -> str:
    return f"{normalize_attachment_name(attachment_name)}{CONFIG_VAR_SUFFIX}"


def split_service_plan(service_plan: str) -> tuple[str, str]:
    """Split "service:plan"; a bare service token gets DEFAULT_PLAN."""
    service, _, plan = service_plan.partition(":")
    return service, plan or DEFAULT_PLAN


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class App:
    id: str
    name: str


@dataclass(frozen=True)
class Resource:
    """Add-on resource.

    service_plan is always stored in the "service:plan" form.
    app_ref is the owning App.id.
    """

    id: str
    name: str
    service_plan: str
    app_ref: str
    created_at: str  # ISO 8601 UTC
    updated_at: str  # ISO 8601 UTC

    @property
    def service(self) -> str:
        return split_service_plan(self.service_plan)[0]

    @property
    def plan(self) -> str:
        return split_service_plan(self.service_plan)[1]

    @property
    def config_var_value(self) -> str:
        return f"@{self.service}/{self.name}"


@dataclass(frozen=True)
class Attachment:
    """Binding of a Resource into an app; name is the config var prefix."""

    id: str
    name: str
    resource_ref: str
    app_ref: str
    created_at: str  # ISO 8601 UTC
    updated_at: str  # ISO 8601 UTC

    @property
    def config_var_key(self) -> str:
        return config_var_key(self.name)


@dataclass(frozen=True)
class Release:
    version: int  # 1-based, per app
    descr: str
    created_at: str  # ISO 8601 UTC

    @property
    def name(self) -> str:
        return f"v{self.version}"


# ---------------------------------------------------------------------------
# StoreBundle — every collection for one tenant
# ---------------------------------------------------------------------------


@dataclass
class StoreBundle:
    apps: dict[str, App] = field(default_factory=dict)
    resources: dict[str, Resource] = field(default_factory=dict)
    attachments: dict[str, Attachment] = field(default_factory=dict)
    config_vars: dict[str, dict[str, str]] = field(default_factory=dict)
    releases: dict[str, list[Release]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "apps": [asdict(app) for app in self.apps.values()],
            "resources": [asdict(resource) for resource in self.resources.values()],
            "attachments": [asdict(attachment) for attachment in self.attachments.values()],
            "config_vars": {app_id: dict(values) for app_id, values in self.config_vars.items()},
            "releases": {
                app_id: [asdict(release) for release in releases]
                for app_id, releases in self.releases.items()
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StoreBundle:
        """Rebuild a bundle from to_dict() output.

        Raises KeyError/TypeError on malformed input, including fields of the
        wrong type; the store turns those into CorruptDurableState.
        """
        if not isinstance(data, dict):
            raise TypeError("bundle must be an object")
        apps = [_record(App, item) for item in _list(data.get("apps", []), "apps")]
        resources = [
            _record(Resource, item) for item in _list(data.get("resources", []), "resources")
        ]
        attachments = [
            _record(Attachment, item) for item in _list(data.get("attachments", []), "attachments")
        ]
        config_vars = data.get("config_vars", {})
        releases = data.get("releases", {})
        if not isinstance(config_vars, dict) or not isinstance(releases, dict):
            raise TypeError("config_vars and releases must be objects")
        for values in config_vars.values():
            if not isinstance(values, dict) or not all(
                isinstance(k, str) and isinstance(v, str) for k, v in values.items()
            ):
                raise TypeError("config_vars must map names to strings")
        return cls(
            apps={app.id: app for app in apps},
            resources={resource.id: resource for resource in resources},
            attachments={attachment.id: attachment for attachment in attachments},
            config_vars={app_id: dict(values) for app_id, values in config_vars.items()},
            releases={
                app_id: [_record(Release, item) for item in _list(items, "releases")]
                for app_id, items in releases.items()
            },
        )


_FIELD_TYPES = {"str": str, "int": int}


def _list(value: Any, what: str) -> list[Any]:
    if not isinstance(value, list):
        raise TypeError(f"{what} must be a list")
    return value


def _record(cls: type[RecordT], item: Any) -> RecordT:
    """Build a record, rejecting missing, extra or wrongly typed fields."""
    if not isinstance(item, dict):
        raise TypeError(f"{cls.__name__} must be an object")
    for record_field in fields(cls):  # type: ignore[arg-type]
        expected = _FIELD_TYPES[str(record_field.type)]
        value = item.get(record_field.name)
        # bool is an int subclass
        if not isinstance(value, expected) or isinstance(value, bool):
            raise TypeError(f"{cls.__name__}.{record_field.name} must be {expected.__name__}")
    return cls(**item)
