import base64
import unittest

from kidizen.errors import Conflict, StorageError
from kidizen.store import (
    InMemoryEntityStore,
    Key,
    SqlEntityStore,
    Transaction,
    decode_cursor,
    encode_cursor,
    project_fields,
)


class EntityStoreContract:
    """Behaviour shared by every entity store backend."""

    def make_store(self):
        raise NotImplementedError

    def setUp(self):
        self.store = self.make_store()

    def _project(self, teacher_id="1", description="Goldfinch"):
        key = Key("Project")
        self.store.put(key, {"teacher_id": teacher_id, "data_number": {"description": description}})
        return key

    def test_put_allocates_id_on_commit(self):
        key = Key("Teacher")
        with self.store.transaction() as tx:
            tx.put(key, {"name": "Ms. Frizzle"})
            self.assertIsNone(key.id)
        self.assertIsNotNone(key.id)

        with self.store.transaction(read_only=True) as tx:
            entity = tx.get(key)
        self.assertEqual(entity.data, {"name": "Ms. Frizzle"})
        self.assertEqual(entity.id, str(key.id))

    def test_reads_do_not_see_own_writes(self):
        key = self._project()
        with self.store.transaction() as tx:
            tx.put(key, {"teacher_id": "2"})
            self.assertEqual(tx.get(key).data["teacher_id"], "1")
        with self.store.transaction(read_only=True) as tx:
            self.assertEqual(tx.get(key).data["teacher_id"], "2")

    def test_exception_rolls_back(self):
        key = self._project()
        with self.assertRaises(RuntimeError):
            with self.store.transaction() as tx:
                tx.delete(key)
                raise RuntimeError("boom")
        with self.store.transaction(read_only=True) as tx:
            self.assertIsNotNone(tx.get(key))

    def test_read_only_transaction_rejects_writes(self):
        with self.assertRaises(StorageError):
            with self.store.transaction(read_only=True) as tx:
                tx.put(Key("Teacher"), {})

    def test_get_checks_kind_and_parent(self):
        project = self._project()
        child = Key("Observation", parent=project)
        self.store.put(child, {"date": "today"})
        with self.store.transaction(read_only=True) as tx:
            self.assertIsNotNone(tx.get(Key("Observation", child.id, project)))
            self.assertIsNone(tx.get(Key("Observation", child.id)))
            self.assertIsNone(tx.get(Key("Project", child.id)))

    def test_ancestor_query_and_projection(self):
        first = self._project()
        second = self._project()
        for description in ("Goldfinch", "Robin"):
            self.store.put(
                Key("Observation", parent=first),
                {"data_number": {"description": description, "quantity": 1}},
            )
        self.store.put(
            Key("Observation", parent=second),
            {"data_number": {"description": "Crow", "quantity": 1}},
        )

        with self.store.transaction(read_only=True) as tx:
            result = tx.query("Observation", ancestor=first, projection=["data_number.description"])
        self.assertEqual(
            [entity.data for entity in result.entities],
            [{"data_number.description": "Goldfinch"}, {"data_number.description": "Robin"}],
        )
        self.assertFalse(result.more_results)

    def test_equality_filter(self):
        self._project(teacher_id="1")
        self._project(teacher_id="2")
        self._project(teacher_id="1")
        with self.store.transaction(read_only=True) as tx:
            result = tx.query("Project", filters={"teacher_id": "1"})
        self.assertEqual(len(result.entities), 2)
        self.assertTrue(all(e.data["teacher_id"] == "1" for e in result.entities))

    def test_cursor_pagination(self):
        keys = [self._project() for _ in range(7)]
        with self.store.transaction(read_only=True) as tx:
            page = tx.query("Project", limit=5)
        self.assertEqual([e.key.id for e in page.entities], [k.id for k in keys[:5]])
        self.assertTrue(page.more_results)

        with self.store.transaction(read_only=True) as tx:
            page = tx.query("Project", limit=5, start_cursor=page.end_cursor)
        self.assertEqual([e.key.id for e in page.entities], [k.id for k in keys[5:]])
        self.assertFalse(page.more_results)

    def test_invalid_cursor_conflicts(self):
        with self.assertRaises(Conflict):
            with self.store.transaction(read_only=True) as tx:
                tx.query("Project", start_cursor="not-a-cursor")

    def test_commit_fails_when_read_entity_was_deleted(self):
        project = self._project()
        stale = self.store.transaction()
        entity = stale.get(project)

        with self.store.transaction() as tx:
            tx.get(project)
            tx.delete(project)

        stale.put(Key("Observation", parent=project), {"date": "today"})
        entity.data["data_number"]["number"] = 1
        stale.put(project, entity.data)
        with self.assertRaises(StorageError):
            stale.commit()
        self.assertFalse(stale.active)

        with self.store.transaction(read_only=True) as tx:
            self.assertIsNone(tx.get(project))
            self.assertEqual(tx.query("Observation", ancestor=project).entities, [])

    def test_commit_fails_when_read_entity_was_updated(self):
        project = self._project()
        stale = self.store.transaction()
        stale.get(project)

        with self.store.transaction() as tx:
            tx.get(project)
            tx.put(project, {"teacher_id": "2"})

        stale.put(project, {"teacher_id": "3"})
        with self.assertRaises(StorageError):
            stale.commit()

        with self.store.transaction(read_only=True) as tx:
            self.assertEqual(tx.get(project).data, {"teacher_id": "2"})

    def test_unrelated_commits_do_not_conflict(self):
        first = self._project()
        second = self._project()
        with self.store.transaction() as tx:
            tx.get(first)
            self.store.put(second, {"teacher_id": "2"})
            tx.put(first, {"teacher_id": "3"})
        with self.store.transaction(read_only=True) as tx:
            self.assertEqual(tx.get(first).data, {"teacher_id": "3"})
            self.assertEqual(tx.get(second).data, {"teacher_id": "2"})

    def test_batch_delete(self):
        keys = [self._project() for _ in range(3)]
        with self.store.transaction() as tx:
            tx.delete(*keys[:2])
        with self.store.transaction(read_only=True) as tx:
            remaining = tx.query("Project")
        self.assertEqual([e.key.id for e in remaining.entities], [keys[2].id])


class InMemoryEntityStoreTests(EntityStoreContract, unittest.TestCase):
    def make_store(self):
        return InMemoryEntityStore()

    def test_snapshot_is_taken_at_first_read(self):
        key = self._project()
        tx = self.store.transaction()
        self.assertEqual(tx.get(key).data["teacher_id"], "1")
        self.store.put(key, {"teacher_id": "9"})
        self.assertEqual(tx.get(key).data["teacher_id"], "1")
        tx.rollback()

    def test_reset(self):
        self._project()
        self.store.reset()
        self.assertEqual(self.store.count("Project"), 0)


class SqlEntityStoreTests(EntityStoreContract, unittest.TestCase):
    """
    Uses SQLite via SQLAlchemy URL for fast/local testing of the SQL store.
    """

    def make_store(self):
        return SqlEntityStore("sqlite+pysqlite:///:memory:")


class CursorTests(unittest.TestCase):
    def test_roundtrip(self):
        self.assertEqual(decode_cursor(encode_cursor(42)), 42)

    def test_rejects_non_integer_payload(self):
        cursor = base64.urlsafe_b64encode(b'{"after": "x"}').decode("ascii")
        with self.assertRaises(Conflict):
            decode_cursor(cursor)

    def test_project_fields_missing_path(self):
        self.assertEqual(project_fields({"a": {"b": 1}}, ["a.b", "a.c"]), {"a.b": 1, "a.c": None})

    def test_transaction_protocol_is_a_context_manager(self):
        for name in ("__enter__", "__exit__"):
            self.assertIn(name, Transaction.__dict__)


if __name__ == "__main__":
    unittest.main()
