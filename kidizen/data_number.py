"""
Maintenance of the derived `project.data_number.number` aggregate.

A project counts its observations in one of two ways:

- `must_be_unique = false`: the sum of every observation's `quantity`;
- `must_be_unique = true`: the number of distinct `description` values.

Every function here runs inside the transaction that mutates the observation
and reads the project and its sibling observations through that transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Set

from kidizen.errors import StorageError
from kidizen.schema import OBSERVATION
from kidizen.store import Entity, Key, Transaction

logger = logging.getLogger(__name__)

DESCRIPTION_PATH = "data_number.description"


@dataclass(frozen=True)
class ObservationDataNumber:
    description: str
    quantity: float

    @classmethod
    def from_dict(cls, data: dict) -> "ObservationDataNumber":
        return cls(description=data["description"], quantity=data["quantity"])


@dataclass
class ProjectDataNumber:
    name: str
    must_be_unique: bool
    number: float

    @classmethod
    def from_dict(cls, data: dict) -> "ProjectDataNumber":
        return cls(
            name=data["name"],
            must_be_unique=data["must_be_unique"],
            number=data["number"],
        )

    def as_dict(self) -> dict:
        return {
            "name": self.name,
            "must_be_unique": self.must_be_unique,
            "number": self.number,
        }

    def add_observation(
        self,
        observation: ObservationDataNumber,
        other_descriptions: Optional[Set[str]] = None,
    ) -> bool:
        """Count `observation`; return whether the number changed."""
        if self.must_be_unique:
            if observation.description in (other_descriptions or set()):
                return False
            self.number += 1
            return True
        self.number += observation.quantity
        return True

    def delete_observation(
        self,
        observation: ObservationDataNumber,
        other_descriptions: Optional[Set[str]] = None,
    ) -> bool:
        """Stop counting `observation`; return whether the number changed."""
        if self.must_be_unique:
            if observation.description in (other_descriptions or set()):
                return False
            self.number -= 1
            return True
        self.number -= observation.quantity
        return True


def other_descriptions(
    tx: Transaction, project_key: Key, exclude_id: Optional[int] = None
) -> Set[str]:
    """Distinct descriptions of the project's observations other than `exclude_id`."""
    result = tx.query(OBSERVATION, ancestor=project_key, projection=[DESCRIPTION_PATH])
    return {
        entity.data[DESCRIPTION_PATH]
        for entity in result.entities
        if entity.key.id != exclude_id
    }


def _load_project(tx: Transaction, project_key: Key) -> Entity:
    project = tx.get(project_key)
    if project is None:
        raise StorageError(f"Project {project_key.id} vanished while updating its data_number.")
    return project


def _save_project(tx: Transaction, project: Entity, data_number: ProjectDataNumber) -> None:
    project.data["data_number"] = data_number.as_dict()
    tx.put(project.key, project.data)
    logger.debug("Project %s data_number.number is now %s", project.key.id, data_number.number)


def process_created(
    tx: Transaction,
    project: Entity,
    new_data_number: dict,
    observation_id: Optional[int] = None,
) -> None:
    data_number = ProjectDataNumber.from_dict(project.data["data_number"])
    observation = ObservationDataNumber.from_dict(new_data_number)

    descriptions = None
    if data_number.must_be_unique:
        descriptions = other_descriptions(tx, project.key, observation_id)

    if data_number.add_observation(observation, descriptions):
        _save_project(tx, project, data_number)


def process_updated(
    tx: Transaction,
    project_key: Key,
    observation_id: int,
    old_data_number: dict,
    new_data_number: dict,
) -> None:
    old = ObservationDataNumber.from_dict(old_data_number)
    new = ObservationDataNumber.from_dict(new_data_number)
    if old == new:
        return

    project = _load_project(tx, project_key)
    data_number = ProjectDataNumber.from_dict(project.data["data_number"])

    descriptions = None
    if data_number.must_be_unique:
        # Only the description counts toward a unique project.
        if old.description == new.description:
            return
        descriptions = other_descriptions(tx, project_key, observation_id)

    before = data_number.number
    data_number.delete_observation(old, descriptions)
    data_number.add_observation(new, descriptions)
    if data_number.number != before:
        _save_project(tx, project, data_number)


def process_deleted(
    tx: Transaction,
    project_key: Key,
    observation_id: int,
    old_data_number: dict,
) -> None:
    observation = ObservationDataNumber.from_dict(old_data_number)

    project = _load_project(tx, project_key)
    data_number = ProjectDataNumber.from_dict(project.data["data_number"])

    descriptions = None
    if data_number.must_be_unique:
        descriptions = other_descriptions(tx, project_key, observation_id)

    if data_number.delete_observation(observation, descriptions):
        _save_project(tx, project, data_number)
