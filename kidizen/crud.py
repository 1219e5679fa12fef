"""
Generic create/read/update/delete over the registered entity kinds.

Each operation runs inside a single store transaction. Any exception raised
inside the `with store.transaction()` block rolls the transaction back, so no
operation is ever partially applied to the store.
"""

from __future__ import annotations

import copy
import logging
import time
from typing import Any, Dict, Optional
from urllib.parse import quote

from kidizen.auth import AuthGuard
from kidizen.cascade import delete_observations_of_project, delete_projects_of_teacher
from kidizen.credentials import CredentialStore
from kidizen.data_number import process_created, process_deleted, process_updated
from kidizen.errors import (
    ANCESTOR_NOT_FOUND,
    TEACHER_NOT_FOUND,
    Forbidden,
    NotFound,
    StorageError,
    ValidationFailed,
)
from kidizen.schema import (
    DELETE,
    GET_ONE,
    OBSERVATION,
    PATCH,
    POST,
    PROJECT,
    TEACHER,
    TEACHERS,
    Ancestor,
    EntityKind,
    lookup_child,
    lookup_root,
    self_url,
)
from kidizen.storage import IMAGE_MIME_TYPES_ALLOWED, BlobStorage, validate_image_url
from kidizen.store import Entity, EntityStore, Key, Transaction

logger = logging.getLogger(__name__)

IMAGE_FORMAT_ERROR = "Images must be in JPEG or PNG format."


def resolve_kind(collection_name: str, ancestor: Optional[Ancestor] = None) -> EntityKind:
    if ancestor is None:
        return lookup_root(collection_name)
    return lookup_child(ancestor.collection_name, collection_name)


class CrudService:
    def __init__(
        self,
        store: EntityStore,
        storage: BlobStorage,
        credentials: CredentialStore,
        guard: AuthGuard,
        default_profile_photo: str,
        max_image_bytes: int = 10 * 1024 * 1024,
    ):
        self.store = store
        self.storage = storage
        self.credentials = credentials
        self.guard = guard
        self.default_profile_photo = default_profile_photo
        self.max_image_bytes = max_image_bytes

    def _expected_owner(
        self,
        tx: Transaction,
        entity_kind: EntityKind,
        entity_id: Optional[str],
        data: Dict[str, Any],
        ancestor: Optional[Ancestor],
    ) -> str:
        """The id of the teacher who owns the entity being operated on."""
        if entity_kind.kind == TEACHER:
            return str(entity_id)
        if entity_kind.kind == PROJECT:
            return str(data["teacher_id"])
        project = tx.get(ancestor.key())
        if project is None:
            raise StorageError(f"Project {ancestor.entity_id} has no data to resolve its owner.")
        return str(project.data["teacher_id"])

    def _delete_image(self, image_url: Optional[str]) -> None:
        if image_url and image_url != self.default_profile_photo:
            self.storage.delete_image(image_url)

    def get_entity(
        self,
        base_url: str,
        collection_name: str,
        entity_id: str,
        authorization: Optional[str],
        ancestor: Optional[Ancestor] = None,
    ) -> Dict[str, Any]:
        entity_kind = resolve_kind(collection_name, ancestor)
        with self.store.transaction(read_only=True) as tx:
            if entity_kind.requires_credentials(GET_ONE):
                # Teachers may only read themselves.
                self.guard.authorize(tx, authorization, entity_id)
            entity = tx.get(entity_kind.key(entity_id, ancestor))
            if entity is None:
                raise NotFound()
        return entity_kind.to_response(base_url, entity, ancestor)

    def list_entities(
        self,
        base_url: str,
        collection_name: str,
        start_cursor: Optional[str] = None,
        ancestor: Optional[Ancestor] = None,
        teacher_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        entity_kind = resolve_kind(collection_name, ancestor)
        with self.store.transaction(read_only=True) as tx:
            ancestor_key = None
            if ancestor is not None:
                ancestor_key = ancestor.key()
                if tx.get(ancestor_key) is None:
                    raise NotFound(ANCESTOR_NOT_FOUND)

            filters = None
            if teacher_id is not None:
                if tx.get(Key(TEACHER, int(teacher_id))) is None:
                    raise NotFound(TEACHER_NOT_FOUND)
                filters = {"teacher_id": teacher_id}

            result = tx.query(
                entity_kind.kind,
                ancestor=ancestor_key,
                filters=filters,
                limit=entity_kind.max_per_page,
                start_cursor=start_cursor,
            )

        entities = [
            entity_kind.to_response(base_url, entity, ancestor) for entity in result.entities
        ]

        next_url = None
        if result.more_results and result.end_cursor:
            next_url = base_url.rstrip("/") + "/"
            if ancestor is not None:
                next_url += f"{ancestor.collection_name}/{ancestor.entity_id}/"
            elif teacher_id is not None:
                next_url += f"{TEACHERS}/{teacher_id}/"
            next_url += f"{collection_name}?start={quote(result.end_cursor, safe='')}"

        return {"entities": entities, "next": next_url}

    def create_entity(
        self,
        base_url: str,
        data: Any,
        collection_name: str,
        authorization: Optional[str],
        ancestor: Optional[Ancestor] = None,
    ) -> Dict[str, Any]:
        entity_kind = resolve_kind(collection_name, ancestor)
        entity_kind.validate_create(data)
        data = copy.deepcopy(data)

        image_url = entity_kind.image_url(data)
        if image_url is not None:
            validate_image_url(self.storage, image_url)

        if entity_kind.kind == TEACHER:
            data["profile_photo"] = self.default_profile_photo

        secrets = None
        key = entity_kind.key(ancestor=ancestor)
        with self.store.transaction() as tx:
            project: Optional[Entity] = None
            if ancestor is not None:
                project = tx.get(ancestor.key())
                if project is None:
                    raise NotFound(ANCESTOR_NOT_FOUND)

            if entity_kind.kind == PROJECT:
                if tx.get(Key(TEACHER, int(data["teacher_id"]))) is None:
                    raise NotFound(TEACHER_NOT_FOUND)

            if entity_kind.requires_credentials(POST):
                owner_id = self._expected_owner(tx, entity_kind, None, data, ancestor)
                self.guard.authorize(tx, authorization, owner_id)

            # Secrets never live on the teacher record itself.
            if entity_kind.kind == TEACHER:
                secrets = (data.pop("password"), data.pop("secret_questions"))

            tx.put(key, data)

            if entity_kind.kind == OBSERVATION:
                process_created(tx, project, data["data_number"])

        entity_id = str(key.id)
        if secrets is not None:
            self._create_credential(key, entity_id, *secrets)

        logger.info("Created %s %s", entity_kind.kind, entity_id)
        return {
            "id": entity_id,
            "self": self_url(base_url, collection_name, entity_id, ancestor),
        }

    def _create_credential(
        self, teacher_key: Key, teacher_id: str, password: str, secret_questions: dict
    ) -> None:
        # The teacher id only exists after commit, so the credential follows in
        # its own write. Undo the teacher if that write fails.
        try:
            self.credentials.create(teacher_id, password, secret_questions)
        except Exception:
            logger.exception("Failed to create credential for teacher %s; removing teacher", teacher_id)
            with self.store.transaction() as tx:
                tx.delete(teacher_key)
            raise

    def update_entity(
        self,
        base_url: str,
        patches: Any,
        collection_name: str,
        entity_id: str,
        authorization: Optional[str],
        ancestor: Optional[Ancestor] = None,
    ) -> Dict[str, Any]:
        entity_kind = resolve_kind(collection_name, ancestor)
        entity_kind.validate_update(patches)
        patches = copy.deepcopy(patches)

        key = entity_kind.key(entity_id, ancestor)
        with self.store.transaction() as tx:
            entity = tx.get(key)
            if entity is None:
                raise NotFound()

            if entity_kind.requires_credentials(PATCH):
                owner_id = self._expected_owner(tx, entity_kind, entity_id, entity.data, ancestor)
                self.guard.authorize(tx, authorization, owner_id)

            old_image_url = entity_kind.image_url(entity.data)
            new_image_url = entity_kind.image_url(patches)
            replaced_image_url = None
            if entity_kind.kind == TEACHER and "profile_photo" in patches and patches["profile_photo"] is None:
                patches["profile_photo"] = self.default_profile_photo
                replaced_image_url = old_image_url
            elif new_image_url is not None and new_image_url != old_image_url:
                validate_image_url(self.storage, new_image_url)
                replaced_image_url = old_image_url

            old_data_number = None
            if entity_kind.kind == OBSERVATION and "data_number" in patches:
                old_data_number = dict(entity.data["data_number"])

            entity.data.update(patches)
            tx.put(key, entity.data)

            if old_data_number is not None:
                process_updated(tx, key.parent, key.id, old_data_number, patches["data_number"])

            # Last step before commit, so earlier failures leave the old blob in place.
            self._delete_image(replaced_image_url)

        logger.info("Updated %s %s", entity_kind.kind, entity_id)
        return {
            "id": entity_id,
            "self": self_url(base_url, collection_name, entity_id, ancestor),
        }

    def delete_entity(
        self,
        collection_name: str,
        entity_id: str,
        authorization: Optional[str],
        ancestor: Optional[Ancestor] = None,
    ) -> None:
        entity_kind = resolve_kind(collection_name, ancestor)
        key = entity_kind.key(entity_id, ancestor)
        with self.store.transaction() as tx:
            entity = tx.get(key)
            if entity is None:
                raise NotFound()

            if entity_kind.requires_credentials(DELETE):
                owner_id = self._expected_owner(tx, entity_kind, entity_id, entity.data, ancestor)
                self.guard.authorize(tx, authorization, owner_id)

            self._delete_image(entity_kind.image_url(entity.data))

            if entity_kind.kind == PROJECT:
                delete_observations_of_project(tx, self.storage, key, self.default_profile_photo)
            elif entity_kind.kind == TEACHER:
                delete_projects_of_teacher(tx, self.storage, entity_id, self.default_profile_photo)
                self.credentials.delete(tx, entity_id)

            tx.delete(key)

            if entity_kind.kind == OBSERVATION:
                process_deleted(tx, key.parent, key.id, entity.data["data_number"])

        logger.info("Deleted %s %s", entity_kind.kind, entity_id)

    def upload_image(
        self,
        file_name: str,
        content: bytes,
        content_type: Optional[str],
        authorization: Optional[str],
    ) -> str:
        """Store an uploaded image for any authenticated teacher and return its public URL."""
        if content_type not in IMAGE_MIME_TYPES_ALLOWED:
            raise ValidationFailed(IMAGE_FORMAT_ERROR)
        if len(content) > self.max_image_bytes:
            limit_mb = self.max_image_bytes // (1024 * 1024)
            raise Forbidden(f"Images can be no larger than {limit_mb} MB")

        with self.store.transaction(read_only=True) as tx:
            self.guard.authorize(tx, authorization)

        stamped_name = f"{int(time.time() * 1000)}_{file_name}"
        url = self.storage.write_image(stamped_name, content, content_type)
        logger.info("Stored uploaded image at %s", url)
        return url
