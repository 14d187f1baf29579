"""
addon_store — Tenant-partitioned state for the mock add-on platform.

Holds every tenant's resources, attachments, config vars and releases, keeps
them consistent under mutation, and loads/flushes them to a durable blob.
"""

from addon_store.exceptions import (
    AddonError,
    Conflict,
    CorruptDurableState,
    MalformedRequest,
    NotFound,
    Unauthenticated,
)
from addon_store.identifiers import IdentifierGenerator
from addon_store.models import App, Attachment, Release, Resource, StoreBundle
from addon_store.store import (
    LocalFileBlobStore,
    S3BlobStore,
    TenantStore,
    blob_store_from_env,
    scoped_store,
)

__all__ = [
    "AddonError",
    "App",
    "Attachment",
    "Conflict",
    "CorruptDurableState",
    "IdentifierGenerator",
    "LocalFileBlobStore",
    "MalformedRequest",
    "NotFound",
    "Release",
    "Resource",
    "S3BlobStore",
    "StoreBundle",
    "TenantStore",
    "Unauthenticated",
    "blob_store_from_env",
    "scoped_store",
]
