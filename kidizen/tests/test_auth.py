import base64
import unittest

from kidizen.auth import AuthGuard, CredentialService, parse_authorization
from kidizen.credentials import CredentialCipher, CredentialStore
from kidizen.errors import (
    Forbidden,
    Malformed,
    NotFound,
    Unauthenticated,
    ValidationFailed,
)
from kidizen.store import InMemoryEntityStore, Key

SECRET_QUESTIONS = {
    "question_1": "Name of your first bus?",
    "question_2": "Name of your first pet?",
    "answer_1": "Magic",
    "answer_2": "Liz",
}


def basic(teacher_id, secret):
    token = base64.b64encode(f"{teacher_id}:{secret}".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


class ParseAuthorizationTests(unittest.TestCase):
    def test_valid_header(self):
        received = parse_authorization(basic("12", "Relativity1"))
        self.assertEqual(received.teacher_id, "12")
        self.assertEqual(received.secret, "Relativity1")

    def test_missing_header(self):
        with self.assertRaises(Unauthenticated):
            parse_authorization(None)

    def test_malformed_headers(self):
        for header in ("Basic", " Basic abc", "Basic ???", basic("1:2", "pw"), basic("12", "")[:-4] + "@@@@"):
            with self.subTest(header=header):
                with self.assertRaises(Malformed):
                    parse_authorization(header)

    def test_no_separator(self):
        token = base64.b64encode(b"12Relativity1").decode("ascii")
        with self.assertRaises(Malformed):
            parse_authorization(f"Basic {token}")

    def test_other_scheme(self):
        with self.assertRaises(Unauthenticated):
            parse_authorization("Bearer abc")


class AuthGuardTests(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryEntityStore()
        self.credentials = CredentialStore(self.store, CredentialCipher("test-secret"))
        self.guard = AuthGuard(self.credentials)
        teacher = Key("Teacher")
        self.store.put(teacher, {"name": "Ms. Frizzle"})
        self.teacher_id = str(teacher.id)
        self.credentials.create(self.teacher_id, "Relativity1", SECRET_QUESTIONS)

    def authorize(self, header, expected_owner_id=None, **kwargs):
        with self.store.transaction(read_only=True) as tx:
            return self.guard.authorize(tx, header, expected_owner_id, **kwargs)

    def test_owner_authorized(self):
        self.assertEqual(
            self.authorize(basic(self.teacher_id, "Relativity1"), self.teacher_id),
            self.teacher_id,
        )

    def test_wrong_owner_is_forbidden_even_with_good_password(self):
        with self.assertRaises(Forbidden):
            self.authorize(basic(self.teacher_id, "Relativity1"), "999")

    def test_wrong_password(self):
        with self.assertRaises(Unauthenticated):
            self.authorize(basic(self.teacher_id, "Manhattan01"), self.teacher_id)

    def test_unknown_teacher(self):
        with self.assertRaises(NotFound):
            self.authorize(basic("999", "Relativity1"))

    def test_non_numeric_id(self):
        with self.assertRaises(NotFound):
            self.authorize(basic("frizzle", "Relativity1"))

    def test_reset_code_mode_rejects_password(self):
        with self.assertRaises(Unauthenticated):
            self.authorize(basic(self.teacher_id, "Relativity1"), use_reset_code=True)


class CredentialServiceTests(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryEntityStore()
        self.credentials = CredentialStore(self.store, CredentialCipher("test-secret"))
        self.service = CredentialService(self.credentials, AuthGuard(self.credentials))
        teacher = Key("Teacher")
        self.store.put(teacher, {"name": "Ms. Frizzle"})
        self.teacher_id = str(teacher.id)
        self.credentials.create(self.teacher_id, "Relativity1", SECRET_QUESTIONS)

    def _credential(self):
        with self.store.transaction(read_only=True) as tx:
            return self.credentials.fetch(tx, self.teacher_id)

    def test_reset_code_is_single_use(self):
        code = self.service.reset_challenge(self.teacher_id).reset_code
        body = {"password": "Manhattan01", "secret_questions": SECRET_QUESTIONS}

        self.service.reset_unknown_password(body, self.teacher_id, basic(self.teacher_id, code))
        self.assertTrue(self._credential().verify_password("Manhattan01"))

        with self.assertRaises(Unauthenticated):
            self.service.reset_unknown_password(
                {"password": "Curie12345", "secret_questions": SECRET_QUESTIONS},
                self.teacher_id,
                basic(self.teacher_id, code),
            )

    def test_reset_requires_matching_answers(self):
        code = self.service.reset_challenge(self.teacher_id).reset_code
        body = {
            "password": "Manhattan01",
            "secret_questions": dict(SECRET_QUESTIONS, answer_1="Bus"),
        }
        with self.assertRaises(Unauthenticated):
            self.service.reset_unknown_password(body, self.teacher_id, basic(self.teacher_id, code))
        self.assertTrue(self._credential().verify_password("Relativity1"))

    def test_reset_rejects_unchanged_password(self):
        code = self.service.reset_challenge(self.teacher_id).reset_code
        body = {"password": "Relativity1", "secret_questions": SECRET_QUESTIONS}
        with self.assertRaises(Forbidden):
            self.service.reset_unknown_password(body, self.teacher_id, basic(self.teacher_id, code))

    def test_reset_for_missing_teacher(self):
        body = {"password": "Manhattan01", "secret_questions": SECRET_QUESTIONS}
        with self.assertRaises(NotFound):
            self.service.reset_unknown_password(body, "999", basic("999", "code"))

    def test_update_known_password(self):
        self.service.update_known_password(
            {"password": "Manhattan01"},
            self.teacher_id,
            basic(self.teacher_id, "Relativity1"),
        )
        self.assertTrue(self._credential().verify_password("Manhattan01"))

    def test_update_secret_questions(self):
        new_questions = dict(SECRET_QUESTIONS, answer_2="Arnold")
        self.service.update_known_password(
            {"secret_questions": new_questions},
            self.teacher_id,
            basic(self.teacher_id, "Relativity1"),
        )
        self.assertTrue(self._credential().verify_secret_questions(new_questions))

    def test_update_rejects_invalid_body(self):
        with self.assertRaises(ValidationFailed):
            self.service.update_known_password(
                {"password": "short"},
                self.teacher_id,
                basic(self.teacher_id, "Relativity1"),
            )


if __name__ == "__main__":
    unittest.main()
