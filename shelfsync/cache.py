import json
import logging
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .config import settings
from .errors import QuotaExceeded
from .models import (
    Audiobook,
    CacheMetadata,
    CacheSnapshot,
    CacheStats,
    Collection,
    SyncMetadata,
    SyncStatus,
    parse_timestamp,
    utc_now_iso,
)
from .storage import KeyValueStore, StorageQuotaError

logger = logging.getLogger(__name__)

CACHE_KEY = "audiobook-library-cache"
METADATA_KEY = "audiobook-sync-metadata"
DEVICE_ID_KEY = "audiobook-device-id"
GIST_ID_KEY = "audiobook-gist-id"


def generate_device_id() -> str:
    return f"device-{int(time.time() * 1000):x}-{uuid.uuid4().hex[:9]}"


class LocalCache:
    def __init__(
        self,
        store: KeyValueStore,
        max_bytes: Optional[int] = None,
        max_age_days: Optional[int] = None,
        app_version: Optional[str] = None,
    ):
        self.store = store
        self.max_bytes = settings.CACHE_MAX_BYTES if max_bytes is None else max_bytes
        self.max_age_days = settings.CACHE_MAX_AGE_DAYS if max_age_days is None else max_age_days
        self.app_version = app_version or settings.APP_VERSION

    async def save_data(
        self,
        data: Collection,
        update_timestamp: bool = True,
        sync_status: SyncStatus = SyncStatus.PENDING,
    ) -> CacheSnapshot:
        """
        Persist a collection snapshot in a single write.

        Stamps metadata.lastModified with the current time unless
        update_timestamp is False, in which case the collection's own
        lastUpdated is kept.

        Raises:
            QuotaExceeded: serialized snapshot is over the size ceiling, or the
                storage medium ran out of space (after one cleanup pass).
        """
        snapshot = CacheSnapshot(
            metadata=CacheMetadata(
                version=data.version or "1.0",
                last_modified=utc_now_iso() if update_timestamp else (data.last_updated or utc_now_iso()),
                device_id=self.get_device_id(),
                app_version=self.app_version,
                sync_status=sync_status,
            ),
            audiobooks=[Audiobook.model_validate(b.to_wire()) for b in data.audiobooks],
            custom_genres=list(data.custom_genres),
            custom_moods=list(data.custom_moods),
        )
        serialized = json.dumps(snapshot.to_wire())

        if len(serialized.encode("utf-8")) > self.max_bytes:
            raise QuotaExceeded("Cache data exceeds storage quota")

        previous = self.store.get(CACHE_KEY)
        try:
            self.store.set(CACHE_KEY, serialized)
            await self.update_sync_metadata(
                last_cache_update=utc_now_iso(),
                cache_size=len(serialized),
                audiobook_count=len(snapshot.audiobooks),
            )
        except StorageQuotaError as e:
            logger.warning(f"Storage quota exceeded while saving cache: {e}")
            self._put_raw(previous)
            await self.cleanup()
            raise QuotaExceeded(
                "Storage quota exceeded. Cache has been cleaned up, please try again.",
                retryable=True,
            ) from e
        return snapshot

    async def load_data(self) -> Optional[CacheSnapshot]:
        """Return the cached snapshot, or None (and clear storage) if absent or malformed."""
        raw = self.store.get(CACHE_KEY)
        if not raw:
            return None

        try:
            cached = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse cache data: {e}")
            await self.clear_data()
            return None

        if not self._is_valid_cache_data(cached):
            logger.warning("Invalid cache data structure, clearing cache")
            await self.clear_data()
            return None

        try:
            metadata = CacheMetadata.model_validate(cached["metadata"])
        except ValidationError as e:
            logger.warning(f"Invalid cache metadata, clearing cache: {e}")
            await self.clear_data()
            return None

        return CacheSnapshot(
            metadata=metadata,
            audiobooks=self._deserialize_audiobooks(cached["audiobooks"]),
            custom_genres=[g for g in cached.get("customGenres", []) if isinstance(g, str)],
            custom_moods=[m for m in cached.get("customMoods", []) if isinstance(m, str)],
        )

    async def restore_snapshot(self, snapshot: Optional[CacheSnapshot]):
        """Put back a snapshot returned by load_data(), leaving sync metadata alone."""
        self._put_raw(json.dumps(snapshot.to_wire()) if snapshot else None)

    def _put_raw(self, raw: Optional[str]):
        if raw is None:
            self.store.delete(CACHE_KEY)
        else:
            self.store.set(CACHE_KEY, raw)

    async def clear_data(self):
        self.store.delete(CACHE_KEY)
        self.store.delete(METADATA_KEY)

    def get_device_id(self) -> str:
        device_id = self.store.get(DEVICE_ID_KEY)
        if not device_id:
            device_id = generate_device_id()
            self.store.set(DEVICE_ID_KEY, device_id)
            logger.info(f"Generated device id {device_id}")
        return device_id

    def get_gist_id(self) -> Optional[str]:
        return self.store.get(GIST_ID_KEY)

    def save_gist_id(self, gist_id: str):
        self.store.set(GIST_ID_KEY, gist_id.strip())

    def clear_gist_id(self):
        self.store.delete(GIST_ID_KEY)

    async def get_sync_metadata(self) -> SyncMetadata:
        defaults = SyncMetadata(device_id=self.get_device_id(), last_updated=utc_now_iso())
        raw = self.store.get(METADATA_KEY)
        if not raw:
            return defaults
        try:
            stored = json.loads(raw)
            return SyncMetadata.model_validate({**defaults.to_wire(), **stored})
        except (json.JSONDecodeError, TypeError, ValidationError) as e:
            logger.error(f"Failed to load sync metadata: {e}")
            return defaults

    async def update_sync_metadata(self, **updates: Any) -> SyncMetadata:
        current = await self.get_sync_metadata()
        updated = current.model_copy(update={**updates, "last_updated": utc_now_iso()})
        # Round-trip through validation so enum/str patches are normalised
        updated = SyncMetadata.model_validate(updated.model_dump())
        self.store.set(METADATA_KEY, json.dumps(updated.to_wire()))
        return updated

    async def get_last_sync_time(self) -> Optional[str]:
        return (await self.get_sync_metadata()).last_sync_time

    async def set_last_sync_time(self, timestamp: str):
        await self.update_sync_metadata(last_sync_time=timestamp)

    async def has_data(self) -> bool:
        return self.store.get(CACHE_KEY) is not None

    async def get_cache_stats(self) -> CacheStats:
        metadata = await self.get_sync_metadata()
        raw = self.store.get(CACHE_KEY)
        return CacheStats(
            has_data=raw is not None,
            cache_size=len(raw) if raw else 0,
            audiobook_count=metadata.audiobook_count,
            last_cache_update=metadata.last_cache_update,
            last_sync_time=metadata.last_sync_time,
            device_id=self.get_device_id(),
            sync_status=metadata.sync_status,
        )

    async def cleanup(self) -> bool:
        """Clear the cache if it has not been written for max_age_days. Returns True if cleared."""
        stats = await self.get_cache_stats()
        if not stats.last_cache_update:
            return False
        age = datetime.now(timezone.utc) - parse_timestamp(stats.last_cache_update)
        if age > timedelta(days=self.max_age_days):
            logger.info(f"Clearing old cache data (>{self.max_age_days} days)")
            await self.clear_data()
            return True
        return False

    @staticmethod
    def _is_valid_cache_data(data: Any) -> bool:
        if not isinstance(data, dict):
            return False
        metadata = data.get("metadata")
        return (
            isinstance(metadata, dict)
            and isinstance(metadata.get("version"), str)
            and isinstance(metadata.get("lastModified"), str)
            and isinstance(metadata.get("deviceId"), str)
            and isinstance(data.get("audiobooks"), list)
        )

    @staticmethod
    def _deserialize_audiobooks(records: List[Dict[str, Any]]) -> List[Audiobook]:
        books = []
        for record in records:
            try:
                books.append(Audiobook.model_validate(record))
            except ValidationError as e:
                logger.warning(f"Skipping invalid audiobook data {record!r}: {e.error_count()} error(s)")
        return books
