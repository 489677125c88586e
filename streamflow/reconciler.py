"""Correct stale live state left behind by a previous run."""

from __future__ import annotations

import logging
from typing import List

from .models import StreamStatus
from .store import Store
from .stream_manager import StreamProcessManager

logger = logging.getLogger(__name__)


class BootReconciler:
    """No encoder survives a restart, so nothing persisted as live can be."""

    def __init__(self, store: Store, manager: StreamProcessManager):
        self.store = store
        self.manager = manager

    async def run(self) -> List[str]:
        reset: List[str] = []
        streams = self.store.find_streams(status=StreamStatus.LIVE)
        if streams:
            logger.info("Resetting %d live stream(s) to offline", len(streams))
        for stream in streams:
            self.store.update_stream_status(stream.id, StreamStatus.OFFLINE, start_time=None)
            reset.append(stream.id)

        corrected = await self.manager.sync_stream_statuses()
        return reset + [stream_id for stream_id in corrected if stream_id not in reset]
