"""
addon_api.router — In-process routing layer for the mock add-on platform.

A Router maps (method, path template) pairs to handlers.  Templates use named
parameters ("/apps/{app}/addon-attachments/{attachment}") that are bound by
name, never by capture position.  dispatch():

  1. rejects requests without a usable credential (401)
  2. resolves the tenant key and loads that tenant's StoreBundle
  3. JSON-decodes the body when it can, otherwise passes it through raw
  4. answers 404 when no route matches
  5. calls the first matching handler and returns its Response unchanged

Typed AddonErrors raised by handlers become error responses here.
CorruptDurableState is never answered: it propagates and aborts.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from typing import Any
from urllib.parse import unquote

from addon_store import (
    AddonError,
    CorruptDurableState,
    IdentifierGenerator,
    StoreBundle,
    TenantStore,
    Unauthenticated,
)
from aws_lambda_powertools import Logger

logger = Logger(service="addon-api")

_PARAM_PATTERN = re.compile(r"\{([a-z_][a-z0-9_]*)\}")


@dataclass(frozen=True)
class Request:
    method: str
    path: str
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Any = None  # raw bytes/str, or an already-decoded structure


@dataclass(frozen=True)
class Response:
    status: int
    body: Any = None


@dataclass(frozen=True)
class ApiDependencies:
    ids: IdentifierGenerator


RouteHandler = Callable[[Request, StoreBundle, dict[str, str], ApiDependencies], Response]


@dataclass(frozen=True)
class Route:
    method: str
    template: str
    pattern: re.Pattern[str]
    handler: RouteHandler

    def match(self, method: str, path: str) -> dict[str, str] | None:
        if method != self.method:
            return None
        found = self.pattern.fullmatch(path)
        if found is None:
            return None
        return {name: unquote(value) for name, value in found.groupdict().items()}


def compile_template(template: str) -> re.Pattern[str]:
    """Turn "/apps/{app}/addons" into an anchored regex with named groups."""
    parts: list[str] = []
    position = 0
    for found in _PARAM_PATTERN.finditer(template):
        parts.append(re.escape(template[position : found.start()]))
        parts.append(f"(?P<{found.group(1)}>[^/]+)")
        position = found.end()
    parts.append(re.escape(template[position:]))
    return re.compile("".join(parts))


def error_response(status: int, code: str, message: str) -> Response:
    return Response(status, {"error": {"code": code, "message": message}})


def _header(headers: Mapping[str, str], name: str) -> str | None:
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


def tenant_key_from_headers(headers: Mapping[str, str]) -> str:
    """Derive the tenant key from the Authorization header.

    Basic credentials are base64-decoded and the segment after the last ":"
    (the API key) is the tenant key.  A Bearer token is used as-is.
    """
    value = (_header(headers, "Authorization") or "").strip()
    if not value:
        raise Unauthenticated("Authorization header is required")
    scheme, _, credential = value.partition(" ")
    credential = credential.strip()
    if scheme.lower() == "bearer":
        key = credential
    else:
        encoded = credential if scheme.lower() == "basic" else value
        try:
            decoded = base64.b64decode(encoded, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise Unauthenticated("Authorization header is not valid Basic credentials") from exc
        key = decoded.rsplit(":", 1)[-1]
    key = key.strip()
    if not key:
        raise Unauthenticated("Authorization header carries an empty API key")
    return key


def decode_body(body: Any) -> Any:
    """JSON-decode raw bodies; leave anything undecodable untouched."""
    if not isinstance(body, (bytes, bytearray, str)):
        return body
    if not body:
        return None
    try:
        return json.loads(body)
    except (ValueError, RecursionError):
        return body


def normalize_path(path: str) -> str:
    path = path.split("?", 1)[0]
    return path.rstrip("/") or "/"


def tenant_fingerprint(tenant_key: str) -> str:
    """Short stable label for log lines; the key itself is a credential."""
    return hashlib.sha256(tenant_key.encode("utf-8")).hexdigest()[:12]


class Router:
    def __init__(self, deps: ApiDependencies | None = None) -> None:
        self._routes: list[Route] = []
        self._deps = deps or ApiDependencies(ids=IdentifierGenerator())

    @property
    def routes(self) -> list[Route]:
        return list(self._routes)

    def register(self, method: str, template: str, handler: RouteHandler) -> None:
        self._routes.append(
            Route(
                method=method.upper(),
                template=template,
                pattern=compile_template(template),
                handler=handler,
            )
        )

    def route(self, method: str, template: str) -> Callable[[RouteHandler], RouteHandler]:
        def decorator(handler: RouteHandler) -> RouteHandler:
            self.register(method, template, handler)
            return handler

        return decorator

    def match(self, method: str, path: str) -> tuple[Route, dict[str, str]] | None:
        normalized = normalize_path(path)
        for route in self._routes:
            params = route.match(method.upper(), normalized)
            if params is not None:
                return route, params
        return None

    def dispatch(self, request: Request, store: TenantStore) -> Response:
        try:
            tenant_key = tenant_key_from_headers(request.headers)
        except Unauthenticated as exc:
            logger.warning("Rejected unauthenticated request", method=request.method)
            return error_response(exc.status_code, exc.code, exc.message)

        logger.append_keys(tenant=tenant_fingerprint(tenant_key))
        try:
            return self._dispatch_for_tenant(request, store.load(tenant_key))
        finally:
            logger.remove_keys(["tenant"])

    def _dispatch_for_tenant(self, request: Request, bundle: StoreBundle) -> Response:
        decoded = replace(request, method=request.method.upper(), body=decode_body(request.body))

        matched = self.match(decoded.method, decoded.path)
        if matched is None:
            logger.info("No route matched", method=decoded.method, path=decoded.path)
            return error_response(404, "NOT_FOUND", "Route not found")
        route, params = matched

        try:
            return route.handler(decoded, bundle, params, self._deps)
        except AddonError as exc:
            logger.info(
                "Request failed",
                extra={"route": route.template, "status": exc.status_code, "reason": exc.message},
            )
            return error_response(exc.status_code, exc.code, exc.message)
        except CorruptDurableState:
            raise
        except Exception:
            logger.exception("Unhandled add-on API handler error", route=route.template)
            return error_response(500, "INTERNAL_ERROR", "Internal server error")
