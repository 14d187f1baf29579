"""
addon_api.schemas — One request shape per mutating endpoint.

Attachment creation takes the flat `addon: {name}` reference only; the nested
`resource: {name}` form is not accepted.  `confirm: true` is the overwrite flag.
Unknown fields are ignored.
"""

from __future__ import annotations

from typing import Any, TypeVar

from addon_store import MalformedRequest
from pydantic import BaseModel, ConfigDict, ValidationError, model_validator

ModelT = TypeVar("ModelT", bound=BaseModel)


class _Shape(BaseModel):
    model_config = ConfigDict(extra="ignore")


class NameRef(_Shape):
    name: str


class OptionalNameRef(_Shape):
    name: str | None = None


class ResourceCreateRequest(_Shape):
    plan: NameRef
    name: str | None = None
    attachment: OptionalNameRef | None = None
    confirm: bool = False


class ResourceCreateWithAppRequest(ResourceCreateRequest):
    app: NameRef


class ResourceUpdateRequest(_Shape):
    plan: NameRef | None = None
    name: str | None = None

    @model_validator(mode="after")
    def _require_change(self) -> ResourceUpdateRequest:
        if self.plan is None and self.name is None:
            raise ValueError("plan or name is required")
        return self


class AttachmentCreateRequest(_Shape):
    app: NameRef
    addon: NameRef
    name: str | None = None
    confirm: bool = False


def parse_body(model: type[ModelT], body: Any) -> ModelT:
    """Validate a decoded body against model, raising MalformedRequest."""
    if not isinstance(body, dict):
        raise MalformedRequest("Request body must be a JSON object")
    try:
        return model.model_validate(body)
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ())) or "body"
        raise MalformedRequest(f"{location}: {first.get('msg', 'invalid value')}") from exc
