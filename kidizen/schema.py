"""
Entity schema registry.

Each collection exposed over HTTP maps onto an `EntityKind` descriptor that
declares its create and update body models, which operations need
credentials, where its image URL lives, and how links are added to the
representation returned to clients.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Type

from pydantic import BaseModel, ValidationError

from kidizen.errors import (
    INVALID_PROPERTIES,
    INVALID_UPDATE,
    NO_SUCH_COLLECTION,
    NotFound,
    ValidationFailed,
)
from kidizen.schemas import (
    CredentialCreate,
    CredentialUpdate,
    ObservationCreate,
    ObservationUpdate,
    ProjectCreate,
    ProjectUpdate,
    TeacherCreate,
    TeacherUpdate,
)
from kidizen.store import Entity, Key

# Datastore kind names
PROJECT = "Project"
TEACHER = "Teacher"
OBSERVATION = "Observation"
CREDENTIAL = "Credential"

# Collection names used in request paths
PROJECTS = "projects"
TEACHERS = "teachers"
OBSERVATIONS = "observations"

# Operations that may require credentials
POST = "POST"
GET_ONE = "GET_ONE"
GET_LIST = "GET_LIST"
PUT = "PUT"
PATCH = "PATCH"
DELETE = "DELETE"


def _validate(model: Type[BaseModel], data: Any, detail: str) -> None:
    """Accept exactly the model's properties; anything else is a 400 with `detail`."""
    try:
        model.model_validate(data)
    except ValidationError as exc:
        raise ValidationFailed(detail) from exc


def self_url(
    base_url: str,
    collection_name: str,
    entity_id: str,
    ancestor: Optional["Ancestor"] = None,
) -> str:
    url = base_url.rstrip("/") + "/"
    if ancestor is not None:
        url += f"{ancestor.collection_name}/{ancestor.entity_id}/"
    return url + f"{collection_name}/{entity_id}"


@dataclass(frozen=True)
class Ancestor:
    """The collection name and id of the root entity a child lives under."""

    collection_name: str
    entity_id: str

    @property
    def kind(self) -> "EntityKind":
        return lookup_root(self.collection_name)

    def key(self) -> Key:
        return Key(self.kind.kind, int(self.entity_id))


class EntityKind:
    """Describes one kind of entity and its per-kind behaviour."""

    def __init__(
        self,
        kind: str,
        collection_name: str,
        *,
        max_per_page: int,
        create_model: Type[BaseModel],
        update_model: Type[BaseModel],
        methods_requiring_credentials: Sequence[str],
        image_field_path: Optional[Sequence[str]] = None,
        parent_collection: Optional[str] = None,
    ):
        self.kind = kind
        self.collection_name = collection_name
        self.max_per_page = max_per_page
        self.create_model = create_model
        self.update_model = update_model
        self.methods_requiring_credentials = frozenset(methods_requiring_credentials)
        self.image_field_path = tuple(image_field_path) if image_field_path else None
        self.parent_collection = parent_collection

    def __repr__(self) -> str:
        return f"EntityKind({self.kind!r})"

    def validate_create(self, data: Any, detail: str = INVALID_PROPERTIES) -> None:
        _validate(self.create_model, data, detail)

    def validate_update(self, data: Any, detail: str = INVALID_UPDATE) -> None:
        _validate(self.update_model, data, detail)

    def requires_credentials(self, method: str) -> bool:
        return method in self.methods_requiring_credentials

    def image_url(self, data: Dict[str, Any]) -> Optional[str]:
        """Follow the image field path through `data`; None if absent."""
        if self.image_field_path is None:
            return None
        value: Any = data
        for part in self.image_field_path:
            if not isinstance(value, dict) or part not in value:
                return None
            value = value[part]
        return value

    def key(self, entity_id: Optional[str] = None, ancestor: Optional[Ancestor] = None) -> Key:
        parent = ancestor.key() if ancestor is not None else None
        return Key(self.kind, int(entity_id) if entity_id is not None else None, parent)

    def inject_links(
        self,
        base_url: str,
        body: Dict[str, Any],
        ancestor: Optional[Ancestor] = None,
    ) -> None:
        """Replace foreign-key ids in `body` with embedded {id, self} objects."""
        return None

    def to_response(
        self,
        base_url: str,
        entity: Entity,
        ancestor: Optional[Ancestor] = None,
    ) -> Dict[str, Any]:
        body = dict(entity.data)
        body["id"] = entity.id
        body["self"] = self_url(base_url, self.collection_name, entity.id, ancestor)
        self.inject_links(base_url, body, ancestor)
        return body


class ProjectKind(EntityKind):
    def inject_links(self, base_url, body, ancestor=None):
        if ancestor is not None:
            raise ValueError("Projects must be root-level entities.")
        teacher_id = body.pop("teacher_id", None)
        body["teacher"] = {
            "id": teacher_id,
            "self": self_url(base_url, TEACHERS, teacher_id),
        }


class ObservationKind(EntityKind):
    def inject_links(self, base_url, body, ancestor=None):
        project_id = ancestor.entity_id
        body["project"] = {
            "id": project_id,
            "self": self_url(base_url, PROJECTS, project_id),
        }


PROJECT_KIND = ProjectKind(
    PROJECT,
    PROJECTS,
    max_per_page=5,
    create_model=ProjectCreate,
    update_model=ProjectUpdate,
    methods_requiring_credentials=[POST, PATCH, DELETE],
    image_field_path=["description_image", "url"],
)

TEACHER_KIND = EntityKind(
    TEACHER,
    TEACHERS,
    max_per_page=0,
    create_model=TeacherCreate,
    update_model=TeacherUpdate,
    methods_requiring_credentials=[GET_ONE, PATCH, DELETE],
    image_field_path=["profile_photo"],
)

OBSERVATION_KIND = ObservationKind(
    OBSERVATION,
    OBSERVATIONS,
    max_per_page=5,
    create_model=ObservationCreate,
    update_model=ObservationUpdate,
    methods_requiring_credentials=[POST, PATCH, DELETE],
    image_field_path=["data_image", "url"],
    parent_collection=PROJECTS,
)

# Credentials are never posted directly; they ride along with new teachers.
CREDENTIAL_KIND = EntityKind(
    CREDENTIAL,
    "credentials",
    max_per_page=0,
    create_model=CredentialCreate,
    update_model=CredentialUpdate,
    methods_requiring_credentials=[POST, PUT, PATCH, DELETE],
)

ROOTS: Dict[str, EntityKind] = {
    PROJECTS: PROJECT_KIND,
    TEACHERS: TEACHER_KIND,
}

CHILDREN: Dict[str, EntityKind] = {
    OBSERVATIONS: OBSERVATION_KIND,
}


def lookup_root(collection_name: str) -> EntityKind:
    try:
        return ROOTS[collection_name]
    except KeyError:
        raise NotFound(NO_SUCH_COLLECTION) from None


def lookup_child(ancestor_collection: str, collection_name: str) -> EntityKind:
    lookup_root(ancestor_collection)
    entity_kind = CHILDREN.get(collection_name)
    if entity_kind is None or entity_kind.parent_collection != ancestor_collection:
        raise NotFound(NO_SUCH_COLLECTION)
    return entity_kind
