import json
import random
import string
import time
from datetime import datetime, timezone
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel
from typing import Any, Dict, List, Optional, Union

from .errors import InvalidArgument

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now_iso() -> str:
    # Millisecond precision, "Z" suffix: the format the web client writes.
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: Optional[str]) -> datetime:
    """Parse an ISO-8601 timestamp; missing or unparseable values sort first."""
    if not value:
        return EPOCH
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def generate_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"audiobook_{int(time.time() * 1000)}_{suffix}"


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Audiobook(WireModel):
    # Unknown keys (e.g. lastModified, dateAdded) survive a load/save cycle.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: str = Field(default_factory=generate_id, min_length=1)
    title: str = Field(min_length=1)
    author: str = ""
    narrator: str = ""
    url: str = ""
    image: str = ""
    length: str = ""
    release_date: str = ""
    # Ints stay ints so documents written by other clients round-trip unchanged
    rating: Union[int, float] = 0
    price: Union[int, float] = 0
    genres: List[str] = Field(default_factory=list)
    moods: List[str] = Field(default_factory=list)

    @field_validator("rating")
    @classmethod
    def _rating_range(cls, v):
        if v != 0 and not 1 <= v <= 5:
            raise ValueError("Rating must be between 1 and 5 (or 0 for unrated)")
        return v

    @field_validator("price")
    @classmethod
    def _price_positive(cls, v):
        if v < 0:
            raise ValueError("Price must be a non-negative number")
        return v

    def to_wire(self) -> Dict[str, Any]:
        # Fields the source never carried stay absent
        data = self.model_dump(mode="json", by_alias=True, exclude_unset=True, exclude_none=True)
        return {"id": self.id, **data}

    @property
    def edited_at(self) -> datetime:
        """Embedded edit timestamp used when merging divergent copies."""
        extra = self.model_extra or {}
        return parse_timestamp(extra.get("lastModified") or extra.get("dateAdded"))


class Collection(WireModel):
    version: str = "1.0"
    last_updated: str = Field(default_factory=utc_now_iso)
    audiobooks: List[Audiobook] = Field(default_factory=list)
    custom_genres: List[str] = Field(default_factory=list)
    custom_moods: List[str] = Field(default_factory=list)
    # Last writer; optional so documents written by other clients still parse.
    device_id: Optional[str] = None

    @classmethod
    def from_payload(cls, data: Any) -> "Collection":
        """Validate a decoded collection document, raising InvalidArgument on bad shape."""
        if not isinstance(data, dict):
            raise InvalidArgument("Data must be an object")
        if not isinstance(data.get("audiobooks"), list):
            raise InvalidArgument("Data must contain an audiobooks array")
        if not isinstance(data.get("version"), str):
            raise InvalidArgument("Data must contain a version string")
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise InvalidArgument(f"Invalid audiobook data: {e.error_count()} validation error(s)") from e

    @classmethod
    def from_json(cls, text: str) -> "Collection":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise InvalidArgument("Invalid JSON format in collection data") from e
        return cls.from_payload(data)

    def to_wire(self) -> Dict[str, Any]:
        data = super().to_wire()
        data["audiobooks"] = [b.to_wire() for b in self.audiobooks]
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_wire(), indent=2)

    def find(self, audiobook_id: str) -> Optional[Audiobook]:
        for book in self.audiobooks:
            if book.id == audiobook_id:
                return book
        return None

    def upsert(self, book: Audiobook):
        for i, existing in enumerate(self.audiobooks):
            if existing.id == book.id:
                self.audiobooks[i] = book
                return
        self.audiobooks.append(book)

    def remove(self, audiobook_id: str) -> bool:
        before = len(self.audiobooks)
        self.audiobooks = [b for b in self.audiobooks if b.id != audiobook_id]
        return len(self.audiobooks) != before


class GistMetadata(BaseModel):
    id: str
    description: str = ""
    visibility: str = "public"
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    file_names: List[str] = Field(default_factory=list)
    has_payload: bool = False


class SyncStatus(str, Enum):
    NEVER = "never"
    PENDING = "pending"
    SYNCED = "synced"
    CONFLICT = "conflict"
    ERROR = "error"


class CacheMetadata(WireModel):
    version: str
    last_modified: str
    device_id: str
    app_version: str = "1.0.0"
    sync_status: SyncStatus = SyncStatus.PENDING


class CacheSnapshot(WireModel):
    metadata: CacheMetadata
    audiobooks: List[Audiobook] = Field(default_factory=list)
    custom_genres: List[str] = Field(default_factory=list)
    custom_moods: List[str] = Field(default_factory=list)

    def to_wire(self) -> Dict[str, Any]:
        data = super().to_wire()
        data["audiobooks"] = [b.to_wire() for b in self.audiobooks]
        return data

    def to_collection(self) -> Collection:
        return Collection(
            version=self.metadata.version,
            last_updated=self.metadata.last_modified,
            audiobooks=[b.model_copy(deep=True) for b in self.audiobooks],
            custom_genres=list(self.custom_genres),
            custom_moods=list(self.custom_moods),
            device_id=self.metadata.device_id,
        )


class SyncMetadata(WireModel):
    last_sync_time: Optional[str] = None
    last_cache_update: Optional[str] = None
    sync_status: SyncStatus = SyncStatus.NEVER
    conflict_resolution: str = "manual"
    cache_size: int = 0
    audiobook_count: int = 0
    device_id: Optional[str] = None
    last_updated: Optional[str] = None
    last_sync_error: Optional[Dict[str, Any]] = None


class CacheStats(BaseModel):
    has_data: bool
    cache_size: int = 0
    audiobook_count: int = 0
    last_cache_update: Optional[str] = None
    last_sync_time: Optional[str] = None
    device_id: str
    sync_status: SyncStatus = SyncStatus.NEVER


class OperationType(str, Enum):
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"
    SYNC = "sync"


class QueueOperation(WireModel):
    type: OperationType
    id: str
    data: Dict[str, Any] = Field(default_factory=dict)
    queued_at: str = Field(default_factory=utc_now_iso)
    last_retry_at: Optional[str] = None
    retry_count: int = 0
    last_error: Optional[str] = None

    @property
    def identity(self):
        return (self.type, self.id)


class QueueError(BaseModel):
    operation_id: str
    type: OperationType
    error: str
    dropped: bool = False


class QueueResult(BaseModel):
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: List[QueueError] = Field(default_factory=list)

    @property
    def dropped(self) -> List[QueueError]:
        return [e for e in self.errors if e.dropped]


class QueueStats(BaseModel):
    total_operations: int = 0
    operation_types: Dict[str, int] = Field(default_factory=dict)
    oldest_operation: Optional[str] = None
    newest_operation: Optional[str] = None
    failed_operations: int = 0


class ConflictResolution(str, Enum):
    KEEP_LOCAL = "keep-local"
    KEEP_REMOTE = "keep-remote"
    MERGE = "merge"


class ConflictInfo(WireModel):
    local_device_id: str
    remote_device_id: Optional[str] = None
    local_timestamp: str
    remote_timestamp: str
    local_count: int = 0
    remote_count: int = 0


class SyncResult(BaseModel):
    success: bool = True
    direction: str = "none"  # none, push, pull, resolved
    queued: bool = False
    conflict: Optional[ConflictInfo] = None
    resolution: Optional[ConflictResolution] = None
    queue: Optional[QueueResult] = None
    audiobook_count: int = 0
    message: str = ""
    timestamp: str = Field(default_factory=utc_now_iso)
