"""Resolve publish targets: decrypt stream keys, manage YouTube broadcasts."""

from __future__ import annotations

import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from googleapiclient.errors import HttpError

from .errors import OrchestratorError
from .models import (
    BroadcastMetadata,
    Destination,
    EncoderSettings,
    ResolvedDestination,
    Rotation,
    RotationItem,
    Stream,
)
from .youtube_client import YouTubeStreamingClient

logger = logging.getLogger(__name__)


class DestinationError(OrchestratorError):
    pass


class KeyCipher:
    """Symmetric encryption for stream keys at rest."""

    def __init__(self, key: str | bytes):
        self._fernet = Fernet(key)

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def encrypt(self, value: str) -> str:
        return self._fernet.encrypt(value.encode()).decode()

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as exc:
            raise DestinationError("Stream key could not be decrypted") from exc


class DestinationResolver:
    def __init__(self, cipher: Optional[KeyCipher] = None, youtube: Optional[YouTubeStreamingClient] = None):
        self.cipher = cipher
        self.youtube = youtube

    def resolve_stream(self, stream: Stream) -> ResolvedDestination:
        destination = stream.destination
        if destination.is_managed:
            metadata = destination.broadcast or BroadcastMetadata(title=stream.title)
            return self._managed(metadata, stream.settings, destination.broadcast_id)
        return self._rtmp(destination)

    def resolve_item(self, rotation: Rotation, item: RotationItem) -> ResolvedDestination:
        if rotation.destination.is_managed:
            # One broadcast per item so each airs with its own title and tags.
            return self._managed(item.metadata, rotation.settings, None)
        return self._rtmp(rotation.destination)

    def release(self, resolved: ResolvedDestination) -> None:
        if resolved.managed and resolved.broadcast_id and self.youtube is not None:
            self.youtube.complete(resolved.broadcast_id)

    def _rtmp(self, destination: Destination) -> ResolvedDestination:
        if not destination.rtmp_url:
            raise DestinationError("No RTMP URL configured")
        url = destination.rtmp_url.rstrip("/")
        if destination.stream_key:
            key = self.cipher.decrypt(destination.stream_key) if self.cipher else destination.stream_key
            url = f"{url}/{key}"
        return ResolvedDestination(url=url)

    def _managed(
        self, metadata: BroadcastMetadata, settings: EncoderSettings, broadcast_id: Optional[str]
    ) -> ResolvedDestination:
        if self.youtube is None:
            raise DestinationError("YouTube is not connected")
        try:
            if broadcast_id is None:
                broadcast_id = self.youtube.create_broadcast(metadata)
                self.youtube.update_video_metadata(broadcast_id, metadata)
            stream_info = self.youtube.create_stream(metadata.title, settings.resolution, settings.fps)
            self.youtube.bind(broadcast_id, stream_info["stream_id"])
        except HttpError as exc:
            logger.error("YouTube API error while preparing %r: %s", metadata.title, exc)
            raise DestinationError(f"YouTube rejected the broadcast: {exc.reason}") from exc
        return ResolvedDestination(
            url=f"{stream_info['ingestion_address']}/{stream_info['stream_name']}",
            broadcast_id=broadcast_id,
            live_stream_id=stream_info["stream_id"],
            managed=True,
        )
