"""
Cascading deletion of a teacher's or project's subtree within one transaction.

Any failure raised here propagates so the caller's transaction rolls back;
nothing is deleted from the store unless the whole cascade succeeds.
"""

from __future__ import annotations

import logging
from typing import Optional

from kidizen.schema import OBSERVATION, PROJECT
from kidizen.storage import BlobStorage
from kidizen.store import Key, Transaction

logger = logging.getLogger(__name__)


def _delete_image(storage: BlobStorage, image_url: Optional[str], default_photo: Optional[str]) -> None:
    if image_url and image_url != default_photo:
        storage.delete_image(image_url)


def delete_observations_of_project(
    tx: Transaction,
    storage: BlobStorage,
    project_key: Key,
    default_photo: Optional[str] = None,
) -> int:
    result = tx.query(OBSERVATION, ancestor=project_key, projection=["data_image.url"])
    keys = []
    for observation in result.entities:
        _delete_image(storage, observation.data["data_image.url"], default_photo)
        keys.append(observation.key)
    if keys:
        tx.delete(*keys)
    logger.info("Deleting %d observations of project %s", len(keys), project_key.id)
    return len(keys)


def delete_projects_of_teacher(
    tx: Transaction,
    storage: BlobStorage,
    teacher_id: str,
    default_photo: Optional[str] = None,
) -> int:
    result = tx.query(
        PROJECT,
        filters={"teacher_id": teacher_id},
        projection=["description_image.url"],
    )
    keys = []
    for project in result.entities:
        _delete_image(storage, project.data["description_image.url"], default_photo)
        delete_observations_of_project(tx, storage, project.key, default_photo)
        keys.append(project.key)
    if keys:
        tx.delete(*keys)
    logger.info("Deleting %d projects of teacher %s", len(keys), teacher_id)
    return len(keys)
