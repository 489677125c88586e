"""Wire the orchestration components together and expose the core API."""

from __future__ import annotations

import logging
from typing import List, Optional

from .config import AppConfig, NotifierConfig
from .destinations import DestinationResolver, KeyCipher
from .errors import StreamLive
from .notifier import Notifier
from .process_handle import Spawner
from .reconciler import BootReconciler
from .rotation import RotationEngine
from .scheduler import SchedulerLoop
from .store import SqlStore, Store
from .stream_manager import StreamProcessManager
from .youtube_client import YouTubeStreamingClient

logger = logging.getLogger(__name__)


class Orchestrator:
    """The only surface the web layer talks to."""

    def __init__(
        self,
        store: Store,
        manager: StreamProcessManager,
        scheduler: SchedulerLoop,
        rotations: RotationEngine,
        reconciler: BootReconciler,
    ):
        self.store = store
        self.manager = manager
        self.scheduler = scheduler
        self.rotations = rotations
        self.reconciler = reconciler
        self._initialized = False

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        store: Optional[Store] = None,
        destinations: Optional[DestinationResolver] = None,
        spawner: Optional[Spawner] = None,
    ) -> "Orchestrator":
        store = store or SqlStore(config.database_url)
        if destinations is None:
            cipher = KeyCipher(config.encryption_key) if config.encryption_key else None
            youtube = YouTubeStreamingClient(config.oauth) if config.oauth else None
            destinations = DestinationResolver(cipher, youtube)
        notifier = Notifier(config.notifier or NotifierConfig())
        settings = config.orchestrator
        manager = StreamProcessManager(store, destinations, settings, notifier, spawner)
        return cls(
            store=store,
            manager=manager,
            scheduler=SchedulerLoop(store, manager, settings, notifier),
            rotations=RotationEngine(store, manager, settings),
            reconciler=BootReconciler(store, manager),
        )

    async def init(self) -> None:
        """Reconcile persisted state, then start the background loops."""
        if self._initialized:
            return
        await self.manager.start()
        reset = await self.reconciler.run()
        if reset:
            logger.info("Boot reconciliation set %d stream(s) offline", len(reset))
        self.rotations.reconcile()
        self.scheduler.start()
        self.rotations.start()
        self._initialized = True
        logger.info("Orchestrator started")

    async def graceful_shutdown(self) -> None:
        logger.info("Shutting down orchestrator")
        await self.scheduler.stop()
        await self.rotations.stop()
        await self.manager.shutdown()
        self._initialized = False
        logger.info("Orchestrator stopped")

    async def start_stream(self, stream_id: str) -> None:
        await self.manager.start_stream(stream_id)

    async def stop_stream(self, stream_id: str) -> None:
        await self.manager.stop_stream(stream_id)

    def is_stream_active(self, stream_id: str) -> bool:
        return self.manager.is_stream_active(stream_id)

    def get_stream_logs(self, stream_id: str) -> List[str]:
        return self.manager.get_stream_logs(stream_id)

    def delete_stream(self, stream_id: str) -> None:
        if self.manager.is_stream_active(stream_id):
            raise StreamLive(f"Stream {stream_id} is live; stop it before deleting")
        self.store.delete_stream(stream_id)

    async def activate_rotation(self, rotation_id: str) -> None:
        await self.rotations.activate_rotation(rotation_id)

    async def pause_rotation(self, rotation_id: str) -> None:
        await self.rotations.pause_rotation(rotation_id)

    async def stop_rotation(self, rotation_id: str) -> None:
        await self.rotations.stop_rotation(rotation_id)

    async def delete_rotation(self, rotation_id: str) -> None:
        await self.rotations.delete_rotation(rotation_id)
