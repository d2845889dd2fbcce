import asyncio
import time
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from .config import settings
from .errors import ClassifiedError, ErrorCategory, SyncInProgress
from .models import Collection, ConflictInfo, ConflictResolution, parse_timestamp
from .sync_manager import SyncManager, SyncState


class PendingConflicts:
    """
    Conflict handler for headless deployments: parks the conflict until a
    client answers it through POST /conflict/resolve.
    """

    def __init__(self):
        self.info: Optional[ConflictInfo] = None
        self.local: Optional[Collection] = None
        self.remote: Optional[Collection] = None
        self._future: Optional[asyncio.Future] = None

    @property
    def pending(self) -> bool:
        return self._future is not None and not self._future.done()

    async def __call__(self, info: ConflictInfo, local: Collection, remote: Collection) -> ConflictResolution:
        self._future = asyncio.get_running_loop().create_future()
        self.info, self.local, self.remote = info, local, remote
        try:
            return await self._future
        finally:
            self._future = None
            self.info = self.local = self.remote = None

    def resolve(self, resolution: ConflictResolution) -> bool:
        if not self.pending:
            return False
        self._future.set_result(ConflictResolution(resolution))
        return True

    def describe(self) -> Dict[str, Any]:
        return {
            "conflict": self.info.to_wire(),
            "local": self.local.to_wire(),
            "remote": self.remote.to_wire(),
            "choices": [r.value for r in ConflictResolution],
        }


class ResolveRequest(BaseModel):
    resolution: ConflictResolution


def get_token(x_token: Optional[str] = Header(None, alias="X-Token")):
    if settings.HTTP_SERVER_TOKEN and x_token != settings.HTTP_SERVER_TOKEN:
        raise HTTPException(status_code=401, detail="Invalid token")


def create_app(sync_manager: SyncManager, conflicts: Optional[PendingConflicts] = None) -> FastAPI:
    app = FastAPI(title="shelfsync")
    conflicts = conflicts or PendingConflicts()

    @app.get("/healthz")
    async def healthz():
        last_sync = await sync_manager.cache.get_last_sync_time()
        if not last_sync:
            return {"status": "starting", "state": sync_manager.state.value}

        age = time.time() - parse_timestamp(last_sync).timestamp()
        # Lenient threshold: report lagging after 3 missed intervals
        if age > sync_manager.sync_interval * 3 + 60:
            return {"status": "lagging", "last_sync_age": age}
        return {"status": "ok", "state": sync_manager.state.value}

    @app.get("/status", dependencies=[Depends(get_token)])
    async def status():
        return await sync_manager.get_sync_status()

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics():
        # Prometheus text format
        status = await sync_manager.get_sync_status()
        metadata = await sync_manager.cache.get_sync_metadata()
        last_sync = parse_timestamp(metadata.last_sync_time).timestamp() if metadata.last_sync_time else 0
        lines = [
            f'shelfsync_queue_size {status["queue"]["total_operations"]}',
            f'shelfsync_queue_failed_operations {status["queue"]["failed_operations"]}',
            f'shelfsync_last_sync_timestamp {last_sync}',
            f'shelfsync_audiobooks {metadata.audiobook_count}',
            f'shelfsync_active_retries {status["retries"]["activeRetries"]}',
            f'shelfsync_dropped_operations {len(status["droppedOperations"])}',
            f'shelfsync_online {int(sync_manager.is_online)}',
        ]
        lines.extend(
            f'shelfsync_sync_state{{state="{s.value}"}} {int(sync_manager.state is s)}'
            for s in SyncState
        )
        return "\n".join(lines) + "\n"

    @app.post("/sync", dependencies=[Depends(get_token)])
    async def sync(force: bool = False):
        try:
            result = await sync_manager.sync(force=force, wait=False)
        except SyncInProgress:
            raise HTTPException(status_code=409, detail="Sync already in progress")
        except ClassifiedError as e:
            code = 409 if e.category is ErrorCategory.CONFLICT else 502
            raise HTTPException(status_code=code, detail=sync_manager.retry_policy.format_error_for_user(e))
        return result.model_dump(mode="json")

    @app.get("/conflict", dependencies=[Depends(get_token)])
    async def get_conflict():
        if not conflicts.pending:
            raise HTTPException(status_code=404, detail="No conflict pending")
        return conflicts.describe()

    @app.post("/conflict/resolve", dependencies=[Depends(get_token)])
    async def resolve_conflict(body: ResolveRequest):
        if not conflicts.resolve(body.resolution):
            raise HTTPException(status_code=404, detail="No conflict pending")
        return {"status": "accepted", "resolution": body.resolution.value}

    return app
