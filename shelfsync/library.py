import json
import logging
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from .cache import LocalCache
from .config import settings
from .engine import ConflictResolver
from .errors import InvalidArgument, NotFound, SyncError
from .models import (
    Audiobook,
    Collection,
    OperationType,
    QueueOperation,
    SyncStatus,
    parse_timestamp,
    utc_now_iso,
)
from .offline_queue import OfflineQueue
from .sync_manager import SYNC_OPERATION_ID, SyncManager

logger = logging.getLogger(__name__)


def read_collection_file(path: str) -> Collection:
    """Load a collection file, skipping entries that fail validation."""
    with open(path, "r", encoding="utf-8") as f:
        text = f.read()
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise InvalidArgument("Data format error: Invalid JSON structure") from e

    if not (
        isinstance(data, dict)
        and isinstance(data.get("version"), str)
        and isinstance(data.get("audiobooks"), list)
    ):
        raise InvalidArgument("Invalid collection format: missing required fields")

    books = []
    for record in data["audiobooks"]:
        try:
            books.append(Audiobook.model_validate(record))
        except ValidationError as e:
            logger.warning(f"Skipping invalid audiobook data {record!r}: {e.error_count()} error(s)")

    return Collection(
        version=data["version"],
        last_updated=data.get("lastUpdated") or utc_now_iso(),
        audiobooks=books,
        custom_genres=data.get("customGenres") or [],
        custom_moods=data.get("customMoods") or [],
    )


def next_timestamp(previous: Optional[str]) -> str:
    """Current time, but never earlier than previous."""
    now = utc_now_iso()
    if previous and parse_timestamp(previous) > parse_timestamp(now):
        return previous
    return now


class Library:
    def __init__(
        self,
        cache: LocalCache,
        queue: OfflineQueue,
        sync_manager: Optional[SyncManager] = None,
        auto_sync: bool = True,
    ):
        self.cache = cache
        self.queue = queue
        self.sync_manager = sync_manager
        self.auto_sync = auto_sync
        self.collection: Optional[Collection] = None
        if sync_manager is not None:
            sync_manager.add_collection_listener(self._replace_collection)

    def _replace_collection(self, collection: Collection):
        self.collection = collection
        logger.debug(f"Library replaced by sync ({len(collection.audiobooks)} audiobooks)")

    async def load(self, bundled_path: Optional[str] = None) -> Collection:
        """
        Load order: local cache, then the remote gist, then the bundled
        default file, then an empty collection.
        """
        bundled_path = bundled_path or settings.BUNDLED_DATA_PATH

        snapshot = await self.cache.load_data()
        if snapshot:
            self.collection = snapshot.to_collection()
            logger.info(f"Loaded {len(self.collection.audiobooks)} audiobooks from cache")
        elif self.sync_manager is not None and self.sync_manager.gist_id and self.sync_manager.is_online:
            try:
                await self.sync_manager.sync()
                snapshot = await self.cache.load_data()
                if snapshot:
                    self.collection = snapshot.to_collection()
            except SyncError as e:
                logger.warning(f"Cloud sync failed, falling back to bundled data: {e}")

        if self.collection is None and bundled_path:
            try:
                collection = read_collection_file(bundled_path)
            except (OSError, InvalidArgument) as e:
                logger.warning(f"Could not load bundled data from {bundled_path}: {e}")
            else:
                await self.cache.save_data(collection, update_timestamp=False)
                self.collection = collection
                logger.info(f"Loaded {len(collection.audiobooks)} audiobooks from {bundled_path}")

        if self.collection is None:
            self.collection = Collection()
            logger.info("Starting with an empty library")

        self._trigger_sync()
        return self.collection

    # --- reads ---

    def _require_loaded(self) -> Collection:
        if self.collection is None:
            raise RuntimeError("Library not loaded")
        return self.collection

    @property
    def audiobooks(self) -> List[Audiobook]:
        return list(self._require_loaded().audiobooks)

    def get(self, audiobook_id: str) -> Optional[Audiobook]:
        return self._require_loaded().find(audiobook_id)

    # --- mutations ---

    async def add_audiobook(self, audiobook: Union[Audiobook, Dict[str, Any]]) -> Audiobook:
        collection = self._require_loaded()
        book = _coerce(audiobook)
        if collection.find(book.id):
            raise InvalidArgument(f"Audiobook {book.id} already exists")

        updated = collection.model_copy(deep=True)
        updated.last_updated = next_timestamp(collection.last_updated)
        book = _stamp(book, updated.last_updated, added=True)
        updated.upsert(book)

        await self._commit(updated, QueueOperation(
            type=OperationType.ADD, id=book.id, data={"audiobook": book.to_wire()},
        ))
        logger.info(f"Added audiobook {book.id} ({book.title})")
        return book

    async def update_audiobook(self, audiobook: Union[Audiobook, Dict[str, Any]]) -> Audiobook:
        collection = self._require_loaded()
        book = _coerce(audiobook)
        existing = collection.find(book.id)
        if existing is None:
            raise NotFound("Audiobook not found in collection")

        added_at = (existing.model_extra or {}).get("dateAdded")
        if added_at and "dateAdded" not in (book.model_extra or {}):
            book = Audiobook.model_validate({**book.to_wire(), "dateAdded": added_at})

        updated = collection.model_copy(deep=True)
        updated.last_updated = next_timestamp(collection.last_updated)
        book = _stamp(book, updated.last_updated)
        updated.upsert(book)

        await self._commit(updated, QueueOperation(
            type=OperationType.UPDATE, id=book.id, data={"audiobook": book.to_wire()},
        ))
        return book

    async def remove_audiobook(self, audiobook_id: str) -> Audiobook:
        collection = self._require_loaded()
        existing = collection.find(audiobook_id)
        if existing is None:
            raise NotFound("Audiobook not found in collection")

        updated = collection.model_copy(deep=True)
        updated.remove(audiobook_id)
        updated.last_updated = next_timestamp(collection.last_updated)

        await self._commit(updated, QueueOperation(type=OperationType.DELETE, id=audiobook_id))
        logger.info(f"Removed audiobook {audiobook_id}")
        return existing

    async def add_custom_genre(self, genre: str) -> bool:
        return await self._edit_tags("custom_genres", genre, add=True)

    async def remove_custom_genre(self, genre: str) -> bool:
        return await self._edit_tags("custom_genres", genre, add=False)

    async def add_custom_mood(self, mood: str) -> bool:
        return await self._edit_tags("custom_moods", mood, add=True)

    async def remove_custom_mood(self, mood: str) -> bool:
        return await self._edit_tags("custom_moods", mood, add=False)

    async def _edit_tags(self, field: str, value: str, add: bool) -> bool:
        collection = self._require_loaded()
        value = (value or "").strip()
        if not value:
            raise InvalidArgument("Tag must be a non-empty string")

        tags = list(getattr(collection, field))
        if add == (value in tags):
            return False
        if add:
            tags.append(value)
        else:
            tags.remove(value)

        updated = collection.model_copy(deep=True, update={field: tags})
        updated.last_updated = next_timestamp(collection.last_updated)
        # Tags travel with the whole document; a sync marker keeps the change pending
        await self._commit(updated, QueueOperation(type=OperationType.SYNC, id=SYNC_OPERATION_ID))
        return True

    async def _commit(self, updated: Collection, operation: QueueOperation):
        previous = await self.cache.load_data()
        await self.cache.save_data(updated, update_timestamp=False, sync_status=SyncStatus.PENDING)
        try:
            await self.queue.enqueue(operation)
        except Exception:
            # Cache and queue change together or not at all
            await self.cache.restore_snapshot(previous)
            raise
        self.collection = updated
        self._trigger_sync()

    def _trigger_sync(self):
        if self.auto_sync and self.sync_manager is not None:
            self.sync_manager.schedule_sync()

    # --- import / export ---

    def export_json(self) -> str:
        return self._require_loaded().to_json()

    async def import_json(self, text: str, merge: bool = True) -> Collection:
        """
        Import a collection file. With merge, entries are combined with the
        current library (newer edit wins); otherwise the library is replaced.
        """
        imported = Collection.from_json(text)
        current = self._require_loaded()

        if merge:
            updated = ConflictResolver.merge(current, imported)
        else:
            updated = imported.model_copy(deep=True)
        updated.device_id = current.device_id
        updated.last_updated = next_timestamp(current.last_updated)

        await self._commit(updated, QueueOperation(type=OperationType.SYNC, id=SYNC_OPERATION_ID))
        logger.info(f"Imported {len(imported.audiobooks)} audiobooks ({'merged' if merge else 'replaced'})")
        return updated


def _coerce(audiobook: Union[Audiobook, Dict[str, Any]]) -> Audiobook:
    if isinstance(audiobook, Audiobook):
        return audiobook
    try:
        return Audiobook.model_validate(audiobook)
    except ValidationError as e:
        raise InvalidArgument(f"Invalid audiobook data: {e.error_count()} validation error(s)") from e


def _stamp(book: Audiobook, timestamp: str, added: bool = False) -> Audiobook:
    record = {**book.to_wire(), "lastModified": timestamp}
    if added:
        record.setdefault("dateAdded", timestamp)
    return Audiobook.model_validate(record)
