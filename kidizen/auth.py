"""
Authorization for owner-scoped operations.

Clients send `Authorization: Basic base64(<teacher_id>:<secret>)` where the
secret is the teacher's password, or the current reset code when resetting a
forgotten password.
"""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Any, Optional

from kidizen.credentials import Credential, CredentialStore, ResetCodeChallenge
from kidizen.errors import (
    CREDENTIAL_NOT_FOUND,
    INVALID_UPDATE,
    TEACHER_NOT_FOUND,
    Forbidden,
    Malformed,
    NotFound,
    Unauthenticated,
)
from kidizen.schema import CREDENTIAL_KIND, TEACHER
from kidizen.schemas import is_valid_id
from kidizen.store import Key, Transaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BasicCredentials:
    teacher_id: str
    secret: str


def parse_authorization(header: Optional[str]) -> BasicCredentials:
    if not header:
        raise Unauthenticated()

    space_index = header.find(" ")
    if space_index <= 0:
        raise Malformed()

    scheme, encoded = header[:space_index], header[space_index + 1 :]
    if scheme != "Basic":
        raise Unauthenticated("Only Basic-type authorization headers are accepted")

    try:
        decoded = base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        raise Malformed() from exc

    # Neither ids nor passwords may contain ':'.
    parts = decoded.split(":")
    if len(parts) != 2:
        raise Malformed()
    return BasicCredentials(teacher_id=parts[0], secret=parts[1])


class AuthGuard:
    def __init__(self, credentials: CredentialStore):
        self.credentials = credentials

    def authorize(
        self,
        tx: Transaction,
        header: Optional[str],
        expected_owner_id: Optional[str] = None,
        credential: Optional[Credential] = None,
        use_reset_code: bool = False,
    ) -> str:
        """
        Check the Basic credentials in `header` and return the authenticated
        teacher id.

        Raises Unauthenticated for a missing header or a wrong secret, Malformed
        for an unparsable header, Forbidden when the header names someone other
        than `expected_owner_id`, and NotFound when no credential is on file.
        """
        received = parse_authorization(header)

        if expected_owner_id is not None and received.teacher_id != str(expected_owner_id):
            raise Forbidden()

        if credential is None:
            if not is_valid_id(received.teacher_id):
                raise NotFound(CREDENTIAL_NOT_FOUND)
            credential = self.credentials.fetch(tx, received.teacher_id)

        if use_reset_code:
            if not credential.verify_reset_code(received.secret):
                raise Unauthenticated("The reset code provided is incorrect and/or expired.")
        elif not credential.verify_password(received.secret):
            raise Unauthenticated("The password provided is incorrect.")

        return received.teacher_id


def _teacher_exists(tx: Transaction, teacher_id: str) -> bool:
    return tx.get(Key(TEACHER, int(teacher_id))) is not None


class CredentialService:
    """Credential operations reachable under /teachers/{id}/credentials."""

    def __init__(self, credentials: CredentialStore, guard: AuthGuard):
        self.credentials = credentials
        self.guard = guard

    def reset_challenge(self, teacher_id: str) -> ResetCodeChallenge:
        return self.credentials.issue_reset_challenge(teacher_id)

    def update_known_password(
        self, patches: Any, teacher_id: str, authorization: Optional[str]
    ) -> None:
        CREDENTIAL_KIND.validate_update(patches)

        with self.credentials.store.transaction() as tx:
            if not _teacher_exists(tx, teacher_id):
                raise NotFound(TEACHER_NOT_FOUND)
            credential = self.credentials.fetch(tx, teacher_id)
            self.guard.authorize(tx, authorization, teacher_id, credential)

            if "password" in patches:
                credential.update_password(patches["password"])
            if "secret_questions" in patches:
                credential.update_secret_questions(patches["secret_questions"])
            self.credentials.save(tx, credential)

        logger.info("Updated credential of teacher %s", teacher_id)

    def reset_unknown_password(
        self, body: Any, teacher_id: str, authorization: Optional[str]
    ) -> None:
        CREDENTIAL_KIND.validate_create(body, INVALID_UPDATE)

        with self.credentials.store.transaction() as tx:
            if not _teacher_exists(tx, teacher_id):
                raise NotFound(TEACHER_NOT_FOUND)
            credential = self.credentials.fetch(tx, teacher_id)
            self.guard.authorize(tx, authorization, teacher_id, credential, use_reset_code=True)

            if not credential.verify_secret_questions(body["secret_questions"]):
                raise Unauthenticated(
                    "The secret questions and answers provided do not match those on file."
                )

            new_password = body["password"]
            if credential.verify_password(new_password):
                raise Forbidden("The new password cannot match the old one.")

            # The reset code is single-use.
            credential.update_password(new_password)
            credential.clear_reset_code()
            self.credentials.save(tx, credential)

        logger.info("Reset password of teacher %s", teacher_id)
