"""
Credential storage for teachers.

A credential lives under its teacher's key and holds the password, the two
secret questions with their answers, and the current reset code. Every string
field is encrypted on its own with a process-wide Fernet key, so changing one
field never touches the others.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from kidizen.errors import CREDENTIAL_NOT_FOUND, TEACHER_NOT_FOUND, NotFound, StorageError
from kidizen.schema import CREDENTIAL, TEACHER
from kidizen.store import Entity, EntityStore, Key, Transaction

logger = logging.getLogger(__name__)

SECRET_QUESTION_FIELDS = ("question_1", "question_2", "answer_1", "answer_2")
RESET_CODE_FIELDS = ("code", "expires")


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class EncryptedField:
    """Opaque ciphertext of a single credential field."""

    token: str

    def __repr__(self) -> str:
        return "EncryptedField(***)"


class CredentialCipher:
    """Symmetric encryption keyed by the process-wide secret."""

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("A credential secret is required.")
        digest = hashlib.sha256(secret.encode("utf-8")).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(digest))

    def encrypt(self, plaintext: str) -> EncryptedField:
        token = self._fernet.encrypt(plaintext.encode("utf-8"))
        return EncryptedField(token.decode("ascii"))

    def decrypt(self, value: EncryptedField) -> str:
        try:
            return self._fernet.decrypt(value.token.encode("ascii")).decode("utf-8")
        except (InvalidToken, ValueError) as exc:
            raise StorageError("Stored credential could not be decrypted.") from exc

    def matches(self, value: EncryptedField, candidate: str) -> bool:
        """Constant-time comparison of a stored field against a plaintext candidate."""
        if not isinstance(candidate, str):
            return False
        stored = self.decrypt(value).encode("utf-8")
        return hmac.compare_digest(stored, candidate.encode("utf-8"))


@dataclass
class ResetCodeChallenge:
    secret_question_1: str
    secret_question_2: str
    reset_code: str

    def as_dict(self) -> dict:
        return {
            "secret_question_1": self.secret_question_1,
            "secret_question_2": self.secret_question_2,
            "reset_code": self.reset_code,
        }


class Credential:
    """A teacher's credential with every field kept encrypted in memory."""

    def __init__(
        self,
        cipher: CredentialCipher,
        key: Key,
        password: EncryptedField,
        secret_questions: Dict[str, EncryptedField],
        reset_code: Dict[str, EncryptedField],
    ):
        self._cipher = cipher
        self.key = key
        self.password = password
        self.secret_questions = secret_questions
        self.reset_code = reset_code

    @classmethod
    def new(
        cls,
        cipher: CredentialCipher,
        teacher_id: str,
        password: str,
        secret_questions: Dict[str, str],
    ) -> "Credential":
        return cls(
            cipher,
            Key(CREDENTIAL, parent=Key(TEACHER, int(teacher_id))),
            cipher.encrypt(password),
            {name: cipher.encrypt(secret_questions[name]) for name in SECRET_QUESTION_FIELDS},
            {name: cipher.encrypt("") for name in RESET_CODE_FIELDS},
        )

    @classmethod
    def from_entity(cls, cipher: CredentialCipher, entity: Entity) -> "Credential":
        data = entity.data
        questions = data.get("secret_questions") or {}
        reset_code = data.get("reset_code") or {}
        try:
            return cls(
                cipher,
                entity.key,
                EncryptedField(data["password"]),
                {name: EncryptedField(questions[name]) for name in SECRET_QUESTION_FIELDS},
                {name: EncryptedField(reset_code[name]) for name in RESET_CODE_FIELDS},
            )
        except (KeyError, TypeError) as exc:
            raise StorageError(f"Credential {entity.key.id} is malformed.") from exc

    def to_data(self) -> dict:
        return {
            "password": self.password.token,
            "secret_questions": {name: v.token for name, v in self.secret_questions.items()},
            "reset_code": {name: v.token for name, v in self.reset_code.items()},
        }

    @property
    def teacher_id(self) -> str:
        return str(self.key.parent.id)

    def verify_password(self, candidate: str) -> bool:
        return self._cipher.matches(self.password, candidate)

    def verify_reset_code(self, candidate: str, now_ms: Optional[int] = None) -> bool:
        code = self._cipher.decrypt(self.reset_code["code"])
        if not code:
            return False
        code_matches = self._cipher.matches(self.reset_code["code"], candidate)
        expires = self._cipher.decrypt(self.reset_code["expires"])
        try:
            unexpired = (now_ms if now_ms is not None else _now_ms()) < int(expires)
        except ValueError:
            unexpired = False
        return code_matches and unexpired

    def verify_secret_questions(self, candidate: Dict[str, str]) -> bool:
        if not isinstance(candidate, dict):
            return False
        results = [
            self._cipher.matches(self.secret_questions[name], candidate.get(name))
            for name in SECRET_QUESTION_FIELDS
        ]
        return all(results)

    def update_password(self, new_password: str) -> None:
        self.password = self._cipher.encrypt(new_password)

    def update_secret_questions(self, new_questions: Dict[str, str]) -> None:
        self.secret_questions = {
            name: self._cipher.encrypt(new_questions[name]) for name in SECRET_QUESTION_FIELDS
        }

    def clear_reset_code(self) -> None:
        self.reset_code = {name: self._cipher.encrypt("") for name in RESET_CODE_FIELDS}

    def issue_reset_challenge(
        self, lifetime: timedelta, now_ms: Optional[int] = None
    ) -> ResetCodeChallenge:
        """Replace any previous reset code with a fresh one and return the challenge."""
        code = str(uuid.uuid4())
        issued_at = now_ms if now_ms is not None else _now_ms()
        expires = issued_at + int(lifetime.total_seconds() * 1000)
        self.reset_code = {
            "code": self._cipher.encrypt(code),
            "expires": self._cipher.encrypt(str(expires)),
        }
        return ResetCodeChallenge(
            secret_question_1=self._cipher.decrypt(self.secret_questions["question_1"]),
            secret_question_2=self._cipher.decrypt(self.secret_questions["question_2"]),
            reset_code=code,
        )


class CredentialStore:
    """Persists credentials as children of their teacher."""

    def __init__(
        self,
        store: EntityStore,
        cipher: CredentialCipher,
        reset_code_lifetime: timedelta = timedelta(minutes=30),
    ):
        self.store = store
        self.cipher = cipher
        self.reset_code_lifetime = reset_code_lifetime

    def create(
        self, teacher_id: str, password: str, secret_questions: Dict[str, str]
    ) -> Credential:
        credential = Credential.new(self.cipher, teacher_id, password, secret_questions)
        self.store.put(credential.key, credential.to_data())
        logger.info("Created credential for teacher %s", teacher_id)
        return credential

    def find(self, tx: Transaction, teacher_id: str) -> Optional[Credential]:
        result = tx.query(CREDENTIAL, ancestor=Key(TEACHER, int(teacher_id)))
        if len(result.entities) != 1:
            return None
        return Credential.from_entity(self.cipher, result.entities[0])

    def fetch(self, tx: Transaction, teacher_id: str) -> Credential:
        credential = self.find(tx, teacher_id)
        if credential is None:
            raise NotFound(CREDENTIAL_NOT_FOUND)
        return credential

    def save(self, tx: Transaction, credential: Credential) -> None:
        tx.put(credential.key, credential.to_data())

    def delete(self, tx: Transaction, teacher_id: str) -> None:
        credential = self.fetch(tx, teacher_id)
        tx.delete(credential.key)

    def issue_reset_challenge(self, teacher_id: str) -> ResetCodeChallenge:
        with self.store.transaction() as tx:
            credential = self.find(tx, teacher_id)
            if credential is None:
                raise NotFound(TEACHER_NOT_FOUND)
            challenge = credential.issue_reset_challenge(self.reset_code_lifetime)
            self.save(tx, credential)
        logger.info("Issued reset code for teacher %s", teacher_id)
        return challenge
