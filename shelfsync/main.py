import argparse
import asyncio
import json
import logging
import signal
import sys
import uvicorn

from .config import settings
from .storage import open_store
from .retry import RetryPolicy
from .clients.gist_client import GistClient
from .cache import LocalCache
from .offline_queue import OfflineQueue
from .errors import ClassifiedError, ErrorCategory, SyncError
from .sync_manager import SyncManager, SyncState
from .library import Library
from .server import PendingConflicts, create_app

# Setup logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
# Silence noisy libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

logger = logging.getLogger("main")

OFFLINE_CATEGORIES = (ErrorCategory.NETWORK, ErrorCategory.TIMEOUT)


class SyncService:
    def __init__(self, store=None, remote=None, retry_policy=None, connectivity_interval=None):
        self.running = True
        self.store = store or open_store()
        self.retry_policy = retry_policy or RetryPolicy()
        self.remote = remote or GistClient(retry_policy=self.retry_policy)
        self.connectivity_interval = connectivity_interval or settings.QUEUE_PROCESS_INTERVAL_SECONDS
        self.cache = LocalCache(self.store)
        self.queue = OfflineQueue(self.store, retry_policy=self.retry_policy)
        self.conflicts = PendingConflicts()

        # Conflicts are answered over HTTP; without the server only a standing
        # CONFLICT_RESOLUTION choice can settle them.
        self.sync_manager = SyncManager(
            self.remote,
            self.cache,
            self.queue,
            retry_policy=self.retry_policy,
            on_conflict=self.conflicts if settings.HTTP_SERVER_ENABLED else None,
            on_sync_status_change=self.on_state_change,
        )
        self.library = Library(self.cache, self.queue, self.sync_manager, auto_sync=False)

    async def setup(self):
        await self.library.load()

    async def connectivity_loop(self):
        """Check the remote while offline; going back online drains the queue."""
        while self.running:
            await asyncio.sleep(self.connectivity_interval)
            gist_id = self.sync_manager.gist_id
            if self.sync_manager.is_online or not gist_id:
                continue
            try:
                await self.remote.exists(gist_id)
            except ClassifiedError as e:
                logger.debug(f"Still offline: {e}")
                continue
            self.sync_manager.set_online(True)

    def on_state_change(self, state):
        # last_error is only current on the transition into ERROR
        if state is not SyncState.ERROR:
            return
        error = self.sync_manager.last_error
        if error and error.get("category") in [c.value for c in OFFLINE_CATEGORIES]:
            if self.sync_manager.is_online:
                self.sync_manager.set_online(False)

    async def start(self):
        await self.setup()
        self.sync_manager.start_auto_sync()

        tasks = [asyncio.create_task(self.connectivity_loop())]

        if settings.HTTP_SERVER_ENABLED:
            app = create_app(self.sync_manager, self.conflicts)
            config = uvicorn.Config(app, host="0.0.0.0", port=settings.HTTP_SERVER_PORT, log_level="warning")
            server_task = uvicorn.Server(config).serve()
            tasks.append(asyncio.create_task(server_task))

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            pass
        finally:
            self.running = False
            await self.sync_manager.close()

    async def run_once(self) -> int:
        await self.setup()
        try:
            # An explicit one-shot pass always tries the remote
            result = await self.sync_manager.sync(skip_offline_check=True)
        except SyncError as e:
            print(json.dumps(self.retry_policy.format_error_for_user(e), indent=2))
            return 1
        finally:
            await self.sync_manager.close()
        print(json.dumps(result.model_dump(mode="json"), indent=2))
        return 0

    async def print_status(self) -> int:
        status = await self.sync_manager.get_sync_status()
        await self.sync_manager.close()
        print(json.dumps(status, indent=2))
        return 0

    async def create_gist(self, description=None) -> int:
        await self.setup()
        try:
            gist_id = await self.sync_manager.create_remote(description)
        finally:
            await self.sync_manager.close()
        print(gist_id)
        return 0


def handle_sigterm(sig, frame):
    logger.info("Received SIGTERM, shutting down...")
    sys.exit(0)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Offline-first audiobook library sync")
    parser.add_argument("--once", action="store_true", help="Run a single sync pass and exit")
    parser.add_argument("--status", action="store_true", help="Print sync status and exit")
    parser.add_argument("--create-gist", action="store_true", help="Publish the local library as a new gist")
    parser.add_argument("--description", help="Description for --create-gist")
    args = parser.parse_args(argv)

    service = SyncService()
    if args.status:
        return asyncio.run(service.print_status())
    if args.once:
        return asyncio.run(service.run_once())
    if args.create_gist:
        return asyncio.run(service.create_gist(args.description))

    signal.signal(signal.SIGTERM, handle_sigterm)
    try:
        asyncio.run(service.start())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    return 0


if __name__ == "__main__":
    sys.exit(main())
