import json
import logging
from typing import Optional
from .models import (
    Collection,
    ConflictInfo,
    ConflictResolution,
    parse_timestamp,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

PUSH = "push"
PULL = "pull"
NONE = "none"


def normalize(collection: Collection) -> str:
    """Canonical form for content comparison: key order, entry order and timestamps ignored."""
    return json.dumps(
        {
            "audiobooks": sorted(
                (b.model_dump(mode="json", by_alias=True, exclude_none=True) for b in collection.audiobooks),
                key=lambda b: b["id"],
            ),
            "customGenres": sorted(set(collection.custom_genres)),
            "customMoods": sorted(set(collection.custom_moods)),
        },
        sort_keys=True,
    )


class ConflictResolver:
    def detect_conflict(
        self,
        local: Collection,
        remote: Collection,
        last_sync_time: Optional[str],
        remote_baseline: Optional[Collection] = None,
    ) -> Optional[ConflictInfo]:
        """
        Returns ConflictInfo when both sides changed since the last confirmed
        sync and their contents differ, otherwise None.

        remote_baseline is the remote as it was before this device replayed its
        queued mutations; its timestamp and writer decide whether anyone else
        touched the remote. Defaults to remote.
        """
        # No confirmed sync yet: remote is authoritative
        if not last_sync_time:
            return None

        baseline = remote_baseline or remote
        synced_at = parse_timestamp(last_sync_time)

        # 1. Detect Changes
        local_changed = parse_timestamp(local.last_updated) > synced_at
        remote_changed = (
            parse_timestamp(baseline.last_updated) > synced_at
            and baseline.device_id != local.device_id
        )
        if not (local_changed and remote_changed):
            return None

        # 2. Same content on both sides is not a conflict
        if normalize(local) == normalize(remote):
            logger.debug("Both sides changed but contents match, no conflict")
            return None

        logger.info(
            f"Conflict detected. Local: {local.last_updated} ({len(local.audiobooks)} books), "
            f"remote: {baseline.last_updated} ({len(remote.audiobooks)} books)"
        )
        return ConflictInfo(
            local_device_id=local.device_id or "",
            remote_device_id=baseline.device_id,
            local_timestamp=local.last_updated,
            remote_timestamp=baseline.last_updated,
            local_count=len(local.audiobooks),
            remote_count=len(remote.audiobooks),
        )

    def choose_direction(
        self,
        local: Optional[Collection],
        remote: Optional[Collection],
        last_sync_time: Optional[str],
        remote_baseline: Optional[Collection] = None,
    ) -> str:
        """Without a conflict the fresher side wins. Returns PUSH, PULL or NONE."""
        if local is None and remote is None:
            return NONE
        if remote is None:
            return PUSH
        if local is None or not last_sync_time:
            return PULL

        local_ts = parse_timestamp(local.last_updated)
        remote_ts = parse_timestamp((remote_baseline or remote).last_updated)
        if local_ts > remote_ts:
            return PUSH
        if remote_ts > local_ts:
            return PULL
        return NONE if normalize(local) == normalize(remote) else PUSH

    # --- resolution strategies ---

    def resolve(self, resolution: ConflictResolution, local: Collection, remote: Collection) -> Collection:
        resolution = ConflictResolution(resolution)
        if resolution is ConflictResolution.KEEP_LOCAL:
            return self.keep_local(local)
        if resolution is ConflictResolution.KEEP_REMOTE:
            return self.keep_remote(remote)
        return self.merge(local, remote)

    @staticmethod
    def keep_local(local: Collection) -> Collection:
        return local.model_copy(deep=True, update={"last_updated": utc_now_iso()})

    @staticmethod
    def keep_remote(remote: Collection) -> Collection:
        return remote.model_copy(deep=True, update={"last_updated": utc_now_iso()})

    @staticmethod
    def merge(local: Collection, remote: Collection) -> Collection:
        """
        Union of both sides by audiobook id. When an id exists on both sides
        the copy with the newer embedded edit timestamp wins; ties keep local.
        Custom genres and moods are unioned.
        """
        remote_books = {b.id: b for b in remote.audiobooks}
        merged = []
        seen = set()

        for book in local.audiobooks:
            other = remote_books.get(book.id)
            winner = other if other is not None and other.edited_at > book.edited_at else book
            merged.append(winner.model_copy(deep=True))
            seen.add(book.id)

        for book in remote.audiobooks:
            if book.id not in seen:
                merged.append(book.model_copy(deep=True))
                seen.add(book.id)

        return Collection(
            version=local.version or remote.version,
            last_updated=utc_now_iso(),
            audiobooks=merged,
            custom_genres=_union(local.custom_genres, remote.custom_genres),
            custom_moods=_union(local.custom_moods, remote.custom_moods),
            device_id=local.device_id,
        )


def _union(first, second):
    result = []
    for item in list(first) + list(second):
        if item not in result:
            result.append(item)
    return result
