"""YouTube API client wrapper."""

from __future__ import annotations

import datetime as dt
import logging
from typing import Dict, Optional

import google.oauth2.credentials
import googleapiclient.discovery
from googleapiclient.errors import HttpError

from .config import OAuthConfig
from .models import BroadcastMetadata

logger = logging.getLogger(__name__)


def _frame_rate(fps: int) -> str:
    return "60fps" if fps >= 50 else "30fps"


def _resolution_label(resolution: str) -> str:
    height = resolution.lower().split("x")[-1]
    return f"{height}p"


class YouTubeStreamingClient:
    """Wrapper around YouTube Data API for live streaming operations."""

    def __init__(self, oauth_config: OAuthConfig):
        self.oauth_config = oauth_config
        self.service = self._build_service()

    def _build_service(self):
        credentials = google.oauth2.credentials.Credentials(
            None,
            refresh_token=self.oauth_config.refresh_token,
            client_id=self.oauth_config.client_id,
            client_secret=self.oauth_config.client_secret,
            token_uri="https://oauth2.googleapis.com/token",
        )
        return googleapiclient.discovery.build("youtube", "v3", credentials=credentials, cache_discovery=False)

    def create_broadcast(self, metadata: BroadcastMetadata, scheduled_start_time: Optional[dt.datetime] = None) -> str:
        start = scheduled_start_time or dt.datetime.now(dt.timezone.utc)
        body = {
            "snippet": {
                "title": metadata.title,
                "description": metadata.description,
                "scheduledStartTime": start.astimezone(dt.timezone.utc).isoformat().replace("+00:00", "Z"),
            },
            "status": {"privacyStatus": metadata.privacy, "selfDeclaredMadeForKids": False},
            "contentDetails": {"enableAutoStart": True, "enableAutoStop": True},
        }
        request = self.service.liveBroadcasts().insert(part="snippet,status,contentDetails", body=body)
        response = request.execute()
        broadcast_id = response["id"]
        logger.info("Created broadcast %s", broadcast_id)
        return broadcast_id

    def update_video_metadata(self, broadcast_id: str, metadata: BroadcastMetadata) -> None:
        body = {
            "id": broadcast_id,
            "snippet": {
                "title": metadata.title,
                "description": metadata.description,
                "categoryId": metadata.category,
            },
        }
        if metadata.tags:
            body["snippet"]["tags"] = metadata.tags
        self.service.videos().update(part="snippet", body=body).execute()

    def create_stream(self, title: str, resolution: str, fps: int) -> Dict[str, str]:
        body = {
            "snippet": {"title": title},
            "cdn": {
                "frameRate": _frame_rate(fps),
                "ingestionType": "rtmp",
                "resolution": _resolution_label(resolution),
            },
        }
        request = self.service.liveStreams().insert(part="snippet,cdn,contentDetails,status", body=body)
        response = request.execute()
        ingestion = response["cdn"]["ingestionInfo"]
        logger.info("Created stream %s", response["id"])
        return {
            "stream_id": response["id"],
            "ingestion_address": ingestion["ingestionAddress"],
            "stream_name": ingestion["streamName"],
        }

    def bind(self, broadcast_id: str, stream_id: str) -> None:
        request = self.service.liveBroadcasts().bind(part="id,contentDetails", id=broadcast_id, streamId=stream_id)
        request.execute()
        logger.info("Bound broadcast %s to stream %s", broadcast_id, stream_id)

    def transition(self, broadcast_id: str, status: str) -> None:
        request = self.service.liveBroadcasts().transition(part="status", id=broadcast_id, broadcastStatus=status)
        request.execute()
        logger.info("Transitioned broadcast %s to %s", broadcast_id, status)

    def complete(self, broadcast_id: str) -> None:
        """End a broadcast; a broadcast that never went live is not an error."""
        try:
            self.transition(broadcast_id, "complete")
        except HttpError as exc:
            logger.warning("Could not complete broadcast %s: %s", broadcast_id, exc)
