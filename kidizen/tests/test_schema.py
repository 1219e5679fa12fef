import unittest

from pydantic import ValidationError

from kidizen.errors import INVALID_PROPERTIES, INVALID_UPDATE, NotFound, ValidationFailed
from kidizen.schema import (
    CREDENTIAL_KIND,
    OBSERVATION_KIND,
    OBSERVATIONS,
    PROJECT_KIND,
    PROJECTS,
    TEACHER_KIND,
    TEACHERS,
    Ancestor,
    lookup_child,
    lookup_root,
    self_url,
)
from kidizen.schemas import (
    MAX_ENTITY_ID,
    CredentialCreate,
    Image,
    ObservationDataNumber,
    ProjectCreate,
    ProjectDataNumber,
    SecretQuestions,
    is_valid_id,
)
from kidizen.store import Entity, Key

BASE_URL = "http://testserver"

SECRET_QUESTIONS = {
    "question_1": "Name of your first bus?",
    "question_2": "Name of your first pet?",
    "answer_1": "Magic",
    "answer_2": "Liz",
}

IMAGE = {
    "title": "Goldfinch",
    "url": "https://storage.googleapis.com/kidizen-science-images/goldfinch.png",
    "alt_text": "A goldfinch on a feeder",
}


class BodyModelTests(unittest.TestCase):
    def assertRejected(self, model, data):
        with self.assertRaises(ValidationError):
            model.model_validate(data)

    def test_ids_are_bounded_digit_strings(self):
        self.assertTrue(is_valid_id("5644004762845184"))
        self.assertTrue(is_valid_id(str(MAX_ENTITY_ID)))
        self.assertFalse(is_valid_id(str(MAX_ENTITY_ID + 1)))
        self.assertFalse(is_valid_id("1" * 30))
        self.assertFalse(is_valid_id("0"))
        self.assertFalse(is_valid_id(""))
        self.assertFalse(is_valid_id("-1"))
        self.assertFalse(is_valid_id("12a"))
        self.assertFalse(is_valid_id("١٢"))
        self.assertFalse(is_valid_id(12))

    def test_password_rules(self):
        def credential(password):
            return {"password": password, "secret_questions": SECRET_QUESTIONS}

        CredentialCreate.model_validate(credential("Relativity1"))
        self.assertRejected(CredentialCreate, credential("short1"))
        self.assertRejected(CredentialCreate, credential("a" * 17))
        self.assertRejected(CredentialCreate, credential("has space1"))
        self.assertRejected(CredentialCreate, credential("pässwort12"))
        self.assertRejected(CredentialCreate, credential(12345678))

    def test_secret_questions_must_differ(self):
        SecretQuestions.model_validate(SECRET_QUESTIONS)
        same_question = dict(SECRET_QUESTIONS, question_2=SECRET_QUESTIONS["question_1"])
        self.assertRejected(SecretQuestions, same_question)
        same_answer = dict(SECRET_QUESTIONS, answer_2=SECRET_QUESTIONS["answer_1"])
        self.assertRejected(SecretQuestions, same_answer)
        self.assertRejected(SecretQuestions, dict(SECRET_QUESTIONS, extra="x"))

    def test_data_numbers(self):
        ProjectDataNumber.model_validate({"name": "Birds", "must_be_unique": True, "number": 0})
        self.assertRejected(ProjectDataNumber, {"name": "Birds", "must_be_unique": 1, "number": 0})
        self.assertRejected(ProjectDataNumber, {"name": "Birds", "must_be_unique": True, "number": "0"})
        ObservationDataNumber.model_validate({"description": "Goldfinch", "quantity": 2.5})
        self.assertRejected(ObservationDataNumber, {"description": "Goldfinch", "quantity": True})

    def test_image_requires_exactly_three_strings(self):
        Image.model_validate(IMAGE)
        self.assertRejected(Image, dict(IMAGE, width=3))
        self.assertRejected(Image, dict(IMAGE, alt_text=""))
        self.assertRejected(Image, IMAGE["url"])

    def test_project_teacher_id_is_bounded(self):
        body = {
            "teacher_id": "1",
            "name": "Backyard birds",
            "data_number": {"name": "Birds", "must_be_unique": False, "number": 0},
            "description_image": IMAGE,
            "description_text": "Count the birds you see.",
        }
        ProjectCreate.model_validate(body)
        self.assertRejected(ProjectCreate, dict(body, teacher_id="9" * 30))
        self.assertRejected(ProjectCreate, dict(body, teacher_id=1))



class EntityKindTests(unittest.TestCase):
    def test_create_requires_every_property(self):
        body = {
            "name": "Ms. Frizzle",
            "email": "frizzle@example.com",
            "school": "Walkerville Elementary",
            "password": "Relativity1",
            "secret_questions": SECRET_QUESTIONS,
        }
        TEACHER_KIND.validate_create(body)
        missing = dict(body)
        del missing["school"]
        with self.assertRaises(ValidationFailed) as ctx:
            TEACHER_KIND.validate_create(missing)
        self.assertEqual(ctx.exception.detail, INVALID_PROPERTIES)
        with self.assertRaises(ValidationFailed):
            TEACHER_KIND.validate_create(dict(body, profile_photo=None))
        with self.assertRaises(ValidationFailed):
            TEACHER_KIND.validate_create(None)

    def test_update_needs_one_known_property(self):
        TEACHER_KIND.validate_update({"profile_photo": None})
        PROJECT_KIND.validate_update({"name": "Feeder birds"})
        for entity_kind, patches in (
            (TEACHER_KIND, {}),
            (TEACHER_KIND, {"password": "Relativity1"}),
            (PROJECT_KIND, {"teacher_id": "1"}),
            (PROJECT_KIND, []),
        ):
            with self.assertRaises(ValidationFailed) as ctx:
                entity_kind.validate_update(patches)
            self.assertEqual(ctx.exception.detail, INVALID_UPDATE)

    def test_only_profile_photo_may_be_null(self):
        with self.assertRaises(ValidationFailed):
            TEACHER_KIND.validate_update({"name": None})
        with self.assertRaises(ValidationFailed):
            PROJECT_KIND.validate_update({"description_image": None})
        with self.assertRaises(ValidationFailed):
            OBSERVATION_KIND.validate_update({"data_number": None})

    def test_credential_models(self):
        CREDENTIAL_KIND.validate_update({"password": "Manhattan01"})
        with self.assertRaises(ValidationFailed) as ctx:
            CREDENTIAL_KIND.validate_create({"password": "Manhattan01"}, INVALID_UPDATE)
        self.assertEqual(ctx.exception.detail, INVALID_UPDATE)


    def test_image_url_follows_field_path(self):
        self.assertEqual(PROJECT_KIND.image_url({"description_image": IMAGE}), IMAGE["url"])
        self.assertIsNone(PROJECT_KIND.image_url({"name": "Birds"}))
        self.assertEqual(TEACHER_KIND.image_url({"profile_photo": "x"}), "x")

    def test_project_response_links_teacher(self):
        entity = Entity(Key("Project", 7), {"teacher_id": "3", "name": "Birds"})
        body = PROJECT_KIND.to_response(BASE_URL, entity)
        self.assertEqual(body["id"], "7")
        self.assertEqual(body["self"], f"{BASE_URL}/projects/7")
        self.assertNotIn("teacher_id", body)
        self.assertEqual(body["teacher"], {"id": "3", "self": f"{BASE_URL}/teachers/3"})

    def test_observation_response_links_project(self):
        ancestor = Ancestor(PROJECTS, "7")
        entity = Entity(Key("Observation", 9, Key("Project", 7)), {"date": "2020-11-30"})
        body = OBSERVATION_KIND.to_response(BASE_URL, entity, ancestor)
        self.assertEqual(body["self"], f"{BASE_URL}/projects/7/observations/9")
        self.assertEqual(body["project"], {"id": "7", "self": f"{BASE_URL}/projects/7"})


class LookupTests(unittest.TestCase):
    def test_lookup_root(self):
        self.assertIs(lookup_root(TEACHERS), TEACHER_KIND)
        with self.assertRaises(NotFound):
            lookup_root("students")

    def test_children_only_live_under_their_parent(self):
        self.assertIs(lookup_child(PROJECTS, OBSERVATIONS), OBSERVATION_KIND)
        with self.assertRaises(NotFound):
            lookup_child(TEACHERS, OBSERVATIONS)
        with self.assertRaises(NotFound):
            lookup_child("classrooms", OBSERVATIONS)

    def test_self_url(self):
        self.assertEqual(self_url(BASE_URL + "/", TEACHERS, "1"), f"{BASE_URL}/teachers/1")
        self.assertEqual(
            self_url(BASE_URL, OBSERVATIONS, "2", Ancestor(PROJECTS, "1")),
            f"{BASE_URL}/projects/1/observations/2",
        )


if __name__ == "__main__":
    unittest.main()
