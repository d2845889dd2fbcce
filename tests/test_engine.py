import unittest

from shelfsync.engine import NONE, PULL, PUSH, ConflictResolver, normalize
from shelfsync.models import Audiobook, Collection, ConflictResolution

from tests.fakes import make_book, make_collection

SYNCED = "2024-01-01T00:00:00.000Z"
T1 = "2024-01-02T00:00:00.000Z"
T2 = "2024-01-03T00:00:00.000Z"


class TestDetectConflict(unittest.TestCase):
    def setUp(self):
        self.resolver = ConflictResolver()
        self.local = make_collection("a", "mine", last_updated=T1, device_id="device-local")
        self.remote = make_collection("a", "theirs", last_updated=T2, device_id="device-remote")

    def test_both_changed_and_differ(self):
        info = self.resolver.detect_conflict(self.local, self.remote, SYNCED)
        self.assertIsNotNone(info)
        self.assertEqual(info.local_device_id, "device-local")
        self.assertEqual(info.remote_device_id, "device-remote")
        self.assertEqual(info.local_timestamp, T1)
        self.assertEqual(info.remote_timestamp, T2)
        self.assertEqual((info.local_count, info.remote_count), (2, 2))

    def test_no_prior_sync(self):
        self.assertIsNone(self.resolver.detect_conflict(self.local, self.remote, None))

    def test_only_one_side_changed(self):
        self.assertIsNone(self.resolver.detect_conflict(self.local, self.remote, T1))

    def test_identical_content_ignores_order(self):
        remote = Collection(
            last_updated=T2,
            audiobooks=list(reversed(self.local.audiobooks)),
            device_id="device-remote",
        )
        self.assertIsNone(self.resolver.detect_conflict(self.local, remote, SYNCED))

    def test_own_write_is_not_foreign(self):
        remote = self.remote.model_copy(update={"device_id": "device-local"})
        self.assertIsNone(self.resolver.detect_conflict(self.local, remote, SYNCED))

    def test_baseline_decides_remote_change(self):
        # The remote was rewritten by this device during the pass; the baseline
        # still shows the foreign edit.
        rewritten = self.remote.model_copy(update={"device_id": "device-local"})
        info = self.resolver.detect_conflict(self.local, rewritten, SYNCED, remote_baseline=self.remote)
        self.assertIsNotNone(info)


class TestChooseDirection(unittest.TestCase):
    def setUp(self):
        self.resolver = ConflictResolver()

    def test_missing_sides(self):
        self.assertEqual(self.resolver.choose_direction(None, None, SYNCED), NONE)
        self.assertEqual(self.resolver.choose_direction(make_collection("a"), None, SYNCED), PUSH)
        self.assertEqual(self.resolver.choose_direction(None, make_collection("a"), SYNCED), PULL)

    def test_fresher_side_wins(self):
        older = make_collection("a", last_updated=T1)
        newer = make_collection("b", last_updated=T2)
        self.assertEqual(self.resolver.choose_direction(newer, older, SYNCED), PUSH)
        self.assertEqual(self.resolver.choose_direction(older, newer, SYNCED), PULL)

    def test_no_prior_sync_pulls(self):
        newer = make_collection("b", last_updated=T2)
        self.assertEqual(self.resolver.choose_direction(newer, make_collection("a", last_updated=T1), None), PULL)

    def test_equal_timestamps(self):
        same = make_collection("a", last_updated=T1)
        self.assertEqual(self.resolver.choose_direction(same, make_collection("a", last_updated=T1), SYNCED), NONE)
        self.assertEqual(self.resolver.choose_direction(same, make_collection("b", last_updated=T1), SYNCED), PUSH)


class TestResolutions(unittest.TestCase):
    def setUp(self):
        self.resolver = ConflictResolver()

    def test_keep_remote_matches_remote(self):
        local = make_collection("a", last_updated=T1, custom_genres=["mine"])
        remote = make_collection("a", "b", last_updated=T2, custom_moods=["theirs"], device_id="other")

        resolved = self.resolver.resolve(ConflictResolution.KEEP_REMOTE, local, remote)

        self.assertEqual(
            resolved.model_dump(exclude={"last_updated"}),
            remote.model_dump(exclude={"last_updated"}),
        )
        self.assertNotEqual(resolved.last_updated, T2)
        self.assertEqual(remote.last_updated, T2)

    def test_keep_local(self):
        local = make_collection("a", last_updated=T1)
        resolved = self.resolver.resolve("keep-local", local, make_collection("b"))
        self.assertEqual([b.id for b in resolved.audiobooks], ["a"])
        self.assertNotEqual(resolved.last_updated, T1)

    def test_merge_disjoint(self):
        local = make_collection("a", "b", custom_genres=["noir", "fantasy"], custom_moods=["dark"])
        remote = make_collection("c", "d", "e", custom_genres=["fantasy", "poetry"], custom_moods=["light"])

        merged = self.resolver.merge(local, remote)

        self.assertEqual(len(merged.audiobooks), 5)
        self.assertEqual(merged.custom_genres, ["noir", "fantasy", "poetry"])
        self.assertEqual(sorted(merged.custom_moods), ["dark", "light"])

    def test_merge_commutes_on_disjoint_ids(self):
        a = make_collection("a", "b", custom_genres=["x"])
        b = make_collection("c", custom_genres=["y"])
        self.assertEqual(normalize(self.resolver.merge(a, b)), normalize(self.resolver.merge(b, a)))

    def test_merge_newer_edit_wins(self):
        local = Collection(audiobooks=[
            make_book("same", "Local title", lastModified=T1),
            make_book("tie", "Local tie", lastModified=T1),
        ])
        remote = Collection(audiobooks=[
            make_book("same", "Remote title", lastModified=T2),
            make_book("tie", "Remote tie", lastModified=T1),
        ])

        merged = self.resolver.merge(local, remote)

        by_id = {b.id: b for b in merged.audiobooks}
        self.assertEqual(by_id["same"].title, "Remote title")
        self.assertEqual(by_id["tie"].title, "Local tie")
        self.assertEqual(len(merged.audiobooks), 2)

    def test_merge_falls_back_to_date_added(self):
        local = Collection(audiobooks=[make_book("x", "Old", dateAdded=T1)])
        remote = Collection(audiobooks=[make_book("x", "New", dateAdded=T2)])
        self.assertEqual(self.resolver.merge(local, remote).audiobooks[0].title, "New")

    def test_merge_does_not_mutate_inputs(self):
        local = make_collection("a")
        remote = make_collection("b")
        merged = self.resolver.merge(local, remote)
        merged.audiobooks[0].title = "changed"
        self.assertEqual(local.audiobooks[0].title, "Book a")


class TestNormalize(unittest.TestCase):
    def test_ignores_order_and_timestamps(self):
        first = Collection(
            last_updated=T1,
            audiobooks=[make_book("a"), make_book("b")],
            custom_genres=["x", "y"],
        )
        second = Collection(
            last_updated=T2,
            audiobooks=[make_book("b"), make_book("a")],
            custom_genres=["y", "x", "x"],
        )
        self.assertEqual(normalize(first), normalize(second))

    def test_detects_field_change(self):
        self.assertNotEqual(
            normalize(Collection(audiobooks=[Audiobook(id="a", title="One")])),
            normalize(Collection(audiobooks=[Audiobook(id="a", title="Two")])),
        )


if __name__ == '__main__':
    unittest.main()
