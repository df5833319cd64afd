"""Clients for the catalog and media URL signing collaborators.

The chart engine does not own track metadata or media storage. It asks the
catalog for eligibility and display fields and asks the signer for
time-limited cover URLs.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterable, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .models import TrackMetadata


logger = logging.getLogger(__name__)


class CatalogProvider(ABC):
    """Source of track eligibility and metadata."""

    @abstractmethod
    async def get_tracks(self, track_ids: Iterable[str]) -> Dict[str, TrackMetadata]:
        """Return metadata for the tracks that exist, keyed by track id."""


class UrlSigner(ABC):
    """Produces time-limited access URLs for stored media."""

    @abstractmethod
    async def sign_url(self, reference: str) -> str:
        """Return a signed URL for a storage reference."""


class StaticCatalogProvider(CatalogProvider):
    """In-memory catalog, used for local runs and tests."""

    def __init__(self, tracks: Optional[Iterable[TrackMetadata]] = None) -> None:
        self.tracks: Dict[str, TrackMetadata] = {
            track.track_id: track for track in (tracks or [])
        }

    def add_track(self, track: TrackMetadata) -> None:
        self.tracks[track.track_id] = track

    def remove_track(self, track_id: str) -> None:
        self.tracks.pop(track_id, None)

    async def get_tracks(self, track_ids: Iterable[str]) -> Dict[str, TrackMetadata]:
        return {
            track_id: self.tracks[track_id]
            for track_id in track_ids
            if track_id in self.tracks
        }


def _build_session(total_retries: int = 3) -> requests.Session:
    session = requests.Session()
    retry_strategy = Retry(
        total=total_retries,
        backoff_factor=1,
        status_forcelist=[429, 500, 502, 503, 504],
    )
    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


class CatalogServiceClient(CatalogProvider):
    """HTTP client for the catalog service batch lookup endpoint."""

    def __init__(self, base_url: str, timeout: float = 5.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = _build_session()

    def _fetch(self, track_ids: list) -> Dict[str, TrackMetadata]:
        response = self.session.post(
            f"{self.base_url}/tracks/lookup",
            json={"ids": track_ids},
            timeout=self.timeout,
        )
        response.raise_for_status()

        tracks = {}
        for item in response.json().get("tracks", []):
            track = TrackMetadata(
                track_id=str(item["id"]),
                name=item.get("name", ""),
                owner=item.get("owner"),
                genre=item.get("genre"),
                duration=float(item.get("duration") or 0),
                is_public=bool(item.get("is_public", True)),
                cover_ref=item.get("cover_ref"),
            )
            tracks[track.track_id] = track
        return tracks

    async def get_tracks(self, track_ids: Iterable[str]) -> Dict[str, TrackMetadata]:
        ids = sorted(set(track_ids))
        if not ids:
            return {}
        return await asyncio.to_thread(self._fetch, ids)

    def close(self) -> None:
        self.session.close()


class MediaUrlSigner(UrlSigner):
    """HTTP client for the media signing service."""

    def __init__(self, base_url: str, timeout: float = 5.0, expires_in: int = 3600) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.expires_in = expires_in
        self.session = _build_session(total_retries=1)

    def _sign(self, reference: str) -> str:
        response = self.session.post(
            f"{self.base_url}/sign",
            json={"reference": reference, "expires_in": self.expires_in},
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json()["url"]

    async def sign_url(self, reference: str) -> str:
        return await asyncio.to_thread(self._sign, reference)

    def close(self) -> None:
        self.session.close()
