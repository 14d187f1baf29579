"""
addon_store.store — Tenant-partitioned state with durable load/flush.

TenantStore keeps one StoreBundle per tenant key in memory.  Durable storage
is touched at exactly two points:
  - restore_all(): lazily, on the first load() of the session
  - persist_all(): once, when the scoped_store() context exits

Durable blob layout: one UTF-8 JSON object {tenant_key: bundle_dict}.
No schema versioning; a format change means deleting the blob.

Backends:
  LocalFileBlobStore  — a file under the user's home (default)
  S3BlobStore         — one S3 object, selected by ADDON_MOCK_STATE_BUCKET
"""

from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Protocol

import boto3
from aws_lambda_powertools import Logger
from botocore.exceptions import ClientError

from addon_store.exceptions import CorruptDurableState
from addon_store.models import StoreBundle

logger = Logger(service="addon-store")

_STATE_PATH_ENV = "ADDON_MOCK_STATE_PATH"
_STATE_BUCKET_ENV = "ADDON_MOCK_STATE_BUCKET"
_STATE_KEY_ENV = "ADDON_MOCK_STATE_KEY"
DEFAULT_STATE_PATH = "~/.addons-mock/cached_mock_data.json"
DEFAULT_STATE_KEY = "addons-mock/cached_mock_data.json"
_MISSING_OBJECT_CODES = {"NoSuchKey", "404", "NotFound"}


class BlobStore(Protocol):
    def read_blob(self, path: str) -> bytes | None: ...

    def write_blob(self, path: str, data: bytes) -> None: ...


class LocalFileBlobStore:
    def read_blob(self, path: str) -> bytes | None:
        file_path = Path(path).expanduser()
        if not file_path.exists():
            return None
        return file_path.read_bytes()

    def write_blob(self, path: str, data: bytes) -> None:
        """Write atomically: temp file in the same directory, then os.replace."""
        file_path = Path(path).expanduser()
        file_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=file_path.parent, prefix=f".{file_path.name}.")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(tmp_name, file_path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


class S3BlobStore:
    def __init__(self, bucket: str, *, s3_client: Any = None) -> None:
        self._bucket = bucket
        region = os.environ.get("AWS_REGION", "eu-west-2")
        self._s3: Any = s3_client or boto3.client("s3", region_name=region)

    def read_blob(self, path: str) -> bytes | None:
        try:
            response = self._s3.get_object(Bucket=self._bucket, Key=path)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in _MISSING_OBJECT_CODES:
                return None
            raise
        return response["Body"].read()

    def write_blob(self, path: str, data: bytes) -> None:
        self._s3.put_object(
            Bucket=self._bucket,
            Key=path,
            Body=data,
            ContentType="application/json",
        )


def resolve_state_path() -> str:
    return os.environ.get(_STATE_PATH_ENV, "").strip() or DEFAULT_STATE_PATH


def blob_store_from_env() -> tuple[BlobStore, str]:
    """Return (blob_store, path) for the configured durable location."""
    bucket = os.environ.get(_STATE_BUCKET_ENV, "").strip()
    if bucket:
        key = os.environ.get(_STATE_KEY_ENV, "").strip() or DEFAULT_STATE_KEY
        return S3BlobStore(bucket), key
    return LocalFileBlobStore(), resolve_state_path()


# ---------------------------------------------------------------------------
# TenantStore
# ---------------------------------------------------------------------------


class TenantStore:
    """
    All tenants' StoreBundles for one session.

    Single-threaded by contract: one request is processed to completion before
    the next is dispatched, so no locking is done here.
    """

    def __init__(self, blob_store: BlobStore, path: str) -> None:
        self._blob_store = blob_store
        self._path = path
        self._bundles: dict[str, StoreBundle] | None = None
        self._restore_failed = False

    @property
    def path(self) -> str:
        return self._path

    @property
    def restored(self) -> bool:
        return self._bundles is not None

    def restore_all(self) -> None:
        """Load every tenant bundle from durable storage.

        Absent blob: start empty.  Present but unreadable: raise
        CorruptDurableState and refuse to persist for the rest of the session.
        """
        raw = self._blob_store.read_blob(self._path)
        if raw is None:
            logger.info("No durable state found, starting empty", path=self._path)
            self._bundles = {}
            return
        try:
            self._bundles = _decode_state(raw)
        except (ValueError, TypeError, KeyError, AttributeError, RecursionError) as exc:
            self._restore_failed = True
            logger.error("Durable state is corrupt", path=self._path, reason=str(exc))
            raise CorruptDurableState(path=self._path, reason=str(exc)) from exc
        logger.info("Restored durable state", path=self._path, tenant_count=len(self._bundles))

    def load(self, tenant_key: str) -> StoreBundle:
        """Return the tenant's bundle, creating an empty one for unknown tenants."""
        bundles = self._ensure_restored()
        bundle = bundles.get(tenant_key)
        if bundle is None:
            bundle = StoreBundle()
            bundles[tenant_key] = bundle
        return bundle

    def peek(self, tenant_key: str) -> StoreBundle | None:
        """Return the tenant's bundle without creating one."""
        return self._ensure_restored().get(tenant_key)

    def tenant_keys(self) -> list[str]:
        return sorted(self._ensure_restored())

    def persist_all(self) -> None:
        """Serialise every bundle to durable storage."""
        if self._restore_failed:
            logger.warning("Skipping persist, durable state failed to load", path=self._path)
            return
        bundles = self._ensure_restored()
        payload = {key: bundle.to_dict() for key, bundle in bundles.items()}
        data = json.dumps(payload, sort_keys=True, indent=2).encode("utf-8")
        self._blob_store.write_blob(self._path, data)
        logger.info("Persisted durable state", path=self._path, tenant_count=len(payload))

    def _ensure_restored(self) -> dict[str, StoreBundle]:
        if self._bundles is None:
            self.restore_all()
        assert self._bundles is not None
        return self._bundles


def _decode_state(raw: bytes) -> dict[str, StoreBundle]:
    data = json.loads(raw.decode("utf-8"))
    if not isinstance(data, dict):
        raise TypeError("top-level durable state must be an object")
    return {str(key): StoreBundle.from_dict(value) for key, value in data.items()}


@contextmanager
def scoped_store(blob_store: BlobStore, path: str) -> Iterator[TenantStore]:
    """Yield a TenantStore and flush it on every exit path."""
    store = TenantStore(blob_store, path)
    try:
        yield store
    finally:
        store.persist_all()
