import tempfile
import threading
import unittest
from datetime import datetime, timezone
from pathlib import Path
from unittest import mock

from eventdesk.errors import MirrorLookupFailed, MirrorWriteFailed, Unauthenticated, UpstreamRejected, UpstreamTimeout
from eventdesk.mirror_sync import MirrorSynchronizer, mirror_slug, resolve_display_name, resolve_full_name
from eventdesk.state_store import LockLease, StateStore
from tests.fakes import FakeCMS, FakeIdentity, make_config, make_profile, session_for


class NameResolutionTests(unittest.TestCase):
    def test_full_name_falls_back_to_email_then_placeholder(self) -> None:
        self.assertEqual(resolve_full_name(make_profile()), "Jane Doe")
        self.assertEqual(resolve_full_name(make_profile(first_name="", last_name="")), "jane@example.com")
        self.assertEqual(resolve_full_name(make_profile(first_name="", last_name="", email="")), "User")

    def test_display_name_prefers_metadata(self) -> None:
        self.assertEqual(resolve_display_name(make_profile(metadata={"displayName": " NYC Events "})), "NYC Events")
        self.assertEqual(resolve_display_name(make_profile(metadata={"displayName": "  "})), "Jane Doe")

    def test_slug_is_lowercase_and_url_safe(self) -> None:
        self.assertEqual(mirror_slug("user_2AbC"), "user-user-2abc")


class MirrorSynchronizerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        self.cms = FakeCMS()
        self.profile = make_profile("user_1")
        self.identity = FakeIdentity(self.profile)
        self.sync = MirrorSynchronizer(make_config(), self.cms, self.identity, self.store)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _users(self) -> list:
        return list(self.cms.collections.get("users", {}).values())

    def test_first_sync_creates_and_publishes_record(self) -> None:
        outcome = self.sync.sync_current_user(session_for("user_1"))

        self.assertFalse(outcome.already_exists)
        users = self._users()
        self.assertEqual(len(users), 1)
        fields = users[0].field_data
        self.assertEqual(fields["clerk-user-id"], "user_1")
        self.assertEqual(fields["name"], "Jane Doe")
        self.assertEqual(fields["full-name"], "Jane Doe")
        self.assertEqual(fields["slug"], "user-user-1")
        self.assertNotIn("phone", fields)
        self.assertFalse(self.cms.create_calls[0]["isDraft"])
        self.assertEqual(self.cms.published, [outcome.mirror_id])
        self.assertEqual(self.store.recent_audit_events()[0]["action"], "mirror_create")

    def test_second_sync_is_idempotent(self) -> None:
        first = self.sync.sync_current_user(session_for("user_1"))
        second = self.sync.sync_current_user(session_for("user_1"))

        self.assertTrue(second.already_exists)
        self.assertEqual(second.mirror_id, first.mirror_id)
        self.assertEqual(second.updated_fields, [])
        self.assertEqual(len(self._users()), 1)
        self.assertEqual(self.cms.update_calls, [])

    def test_display_name_change_updates_only_changed_field(self) -> None:
        first = self.sync.sync_current_user(session_for("user_1"))
        self.identity.profiles["user_1"].metadata["displayName"] = "NYC Events"

        outcome = self.sync.sync_current_user(session_for("user_1"))

        self.assertEqual(outcome.updated_fields, ["name"])
        self.assertEqual(len(self.cms.update_calls), 1)
        call = self.cms.update_calls[0]
        self.assertEqual(call["id"], first.mirror_id)
        self.assertEqual(call["fieldData"], {"name": "NYC Events"})
        self.assertEqual(call["target"], "live")
        self.assertEqual(self._users()[0].field_data["full-name"], "Jane Doe")

    def test_duplicates_resolve_to_oldest_without_deleting(self) -> None:
        newer = self.cms.seed(
            "users",
            {"clerk-user-id": "user_1", "name": "Jane Doe", "full-name": "Jane Doe"},
            created_on=datetime(2024, 3, 1, tzinfo=timezone.utc),
        )
        older = self.cms.seed(
            "users",
            {"clerk-user-id": "user_1", "name": "Jane Doe", "full-name": "Jane Doe"},
            created_on=datetime(2024, 2, 1, tzinfo=timezone.utc),
        )

        with self.assertLogs("eventdesk.mirror_sync", level="WARNING") as logs:
            outcome = self.sync.sync_current_user(session_for("user_1"))

        self.assertEqual(outcome.mirror_id, older.id)
        self.assertIn(newer.id, "\n".join(logs.output))
        self.assertEqual(len(self._users()), 2)

    def test_publish_failure_does_not_fail_sync(self) -> None:
        self.cms.fail_publish = UpstreamRejected("CMS API error: 409", status=409, body="conflict")

        outcome = self.sync.sync_current_user(session_for("user_1"))

        self.assertFalse(outcome.already_exists)
        self.assertEqual(len(self._users()), 1)

    def test_write_failure_is_mirror_write_failed(self) -> None:
        self.cms.fail_writes = UpstreamRejected("CMS API error: 400", status=400, body="bad field")

        with self.assertRaises(MirrorWriteFailed):
            self.sync.sync_current_user(session_for("user_1"))

    def test_lookup_failure_is_mirror_lookup_failed(self) -> None:
        sync = MirrorSynchronizer(make_config(cms={"users_collection_id": ""}), self.cms, self.identity, self.store)

        with self.assertRaises(MirrorLookupFailed) as ctx:
            sync.sync_current_user(session_for("user_1"))
        self.assertFalse(ctx.exception.not_found)

    def test_current_mirror_user_not_found(self) -> None:
        with self.assertRaises(MirrorLookupFailed) as ctx:
            self.sync.current_mirror_user(session_for("user_1"))
        self.assertTrue(ctx.exception.not_found)
        self.assertEqual(ctx.exception.status_code, 404)

    def test_missing_session_is_unauthenticated(self) -> None:
        with self.assertRaises(Unauthenticated):
            self.sync.sync_current_user(None)
        self.assertEqual(self.cms.calls, [])

    def test_concurrent_syncs_create_a_single_record(self) -> None:
        self.cms.list_delay = 0.05
        outcomes = []
        errors = []

        def worker() -> None:
            try:
                outcomes.append(self.sync.sync_current_user(session_for("user_1")))
            except Exception as exc:  # noqa: BLE001
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        self.assertEqual(len(self._users()), 1)
        self.assertEqual(len({outcome.mirror_id for outcome in outcomes}), 1)
        self.assertEqual(sum(1 for outcome in outcomes if not outcome.already_exists), 1)

    def test_lease_outlasting_ttl_still_creates_a_single_record(self) -> None:
        sync = MirrorSynchronizer(
            make_config(sync={"lock_ttl_seconds": 1, "lock_wait_seconds": 10}),
            self.cms,
            self.identity,
            self.store,
        )
        self.cms.list_delay = 1.5
        outcomes = []
        errors = []

        def worker() -> None:
            try:
                outcomes.append(sync.sync_current_user(session_for("user_1")))
            except Exception as exc:  # noqa: BLE001
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        self.assertEqual(len(self._users()), 1)
        self.assertEqual(sum(1 for outcome in outcomes if not outcome.already_exists), 1)

    def test_lost_lease_blocks_create(self) -> None:
        with mock.patch.object(LockLease, "ensure_held", side_effect=UpstreamTimeout("lost")):
            with self.assertRaises(UpstreamTimeout):
                self.sync.sync_current_user(session_for("user_1"))

        self.assertEqual(self.cms.create_calls, [])
        self.assertEqual(self._users(), [])


if __name__ == "__main__":
    unittest.main()
