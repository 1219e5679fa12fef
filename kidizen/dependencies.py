"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

from datetime import timedelta

from kidizen.auth import AuthGuard, CredentialService
from kidizen.config import get_settings
from kidizen.credentials import CredentialCipher, CredentialStore
from kidizen.crud import CrudService
from kidizen.storage import BlobStorage, InMemoryBlobStorage, S3BlobStorage
from kidizen.store import EntityStore, InMemoryEntityStore, SqlEntityStore

_entity_store: EntityStore | None = None
_blob_storage: BlobStorage | None = None
_cipher: CredentialCipher | None = None


def get_entity_store() -> EntityStore:
    """
    Return a singleton entity store so data persists across requests.
    """
    global _entity_store
    if _entity_store:
        return _entity_store

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.database_url:
        _entity_store = InMemoryEntityStore()
    else:
        _entity_store = SqlEntityStore(settings.database_url)
    return _entity_store


def get_blob_storage() -> BlobStorage:
    global _blob_storage
    if _blob_storage:
        return _blob_storage

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.aws_access_key_id:
        _blob_storage = InMemoryBlobStorage(
            public_base_url=settings.storage_public_base_url,
            bucket=settings.storage_bucket,
        )
    else:
        _blob_storage = S3BlobStorage(
            bucket=settings.storage_bucket,
            public_base_url=settings.storage_public_base_url,
            region=settings.storage_region or "",
            endpoint=settings.storage_endpoint or "",
            access_key_id=settings.aws_access_key_id or "",
            secret_access_key=settings.aws_secret_access_key or "",
            probe_timeout=settings.image_probe_timeout,
        )
    return _blob_storage


def get_cipher() -> CredentialCipher:
    global _cipher
    if _cipher:
        return _cipher
    _cipher = CredentialCipher(get_settings().credential_secret)
    return _cipher


def get_credential_store() -> CredentialStore:
    settings = get_settings()
    return CredentialStore(
        get_entity_store(),
        get_cipher(),
        reset_code_lifetime=timedelta(minutes=settings.reset_code_lifetime_minutes),
    )


def get_auth_guard() -> AuthGuard:
    return AuthGuard(get_credential_store())


def get_crud_service() -> CrudService:
    settings = get_settings()
    credentials = get_credential_store()
    return CrudService(
        get_entity_store(),
        get_blob_storage(),
        credentials,
        AuthGuard(credentials),
        default_profile_photo=settings.default_profile_photo,
        max_image_bytes=settings.max_image_bytes,
    )


def get_credential_service() -> CredentialService:
    credentials = get_credential_store()
    return CredentialService(credentials, AuthGuard(credentials))


def reset_dependencies() -> None:
    """Drop every singleton so the next request rebuilds them (used in tests)."""
    global _entity_store, _blob_storage, _cipher
    _entity_store = None
    _blob_storage = None
    _cipher = None
