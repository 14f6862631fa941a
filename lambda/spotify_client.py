import base64
import contextvars
import re
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import requests

from runtime import (
    REQUEST_TIMEOUT,
    HTTPError,
    NotFoundError,
    RateLimitError,
    UpstreamUnavailable,
    ERROR_TEXT,
    get_config_secret,
    log,
)

TOKEN_URL = "https://accounts.spotify.com/api/token"
API_BASE = "https://api.spotify.com/v1"
PLAYLIST_FIELDS = "name,description,public,owner.display_name,tracks.total"
TRACK_FIELDS = (
    "items(track(name,artists(name),album(name,release_date),popularity,"
    "duration_ms,explicit))"
)
TRACK_PAGE_LIMIT = 50

PLAYLIST_URL_PATTERNS = [
    re.compile(r"open\.spotify\.com/playlist/([a-zA-Z0-9_-]+)(?:\?.*)?$"),
    re.compile(r"open\.spotify\.com/intl-[a-z]{2}/playlist/([a-zA-Z0-9_-]+)(?:\?.*)?$"),
    re.compile(r"spotify:playlist:([a-zA-Z0-9_-]+)$"),
    re.compile(r"spotify\.com/playlist/([a-zA-Z0-9_-]+)(?:\?.*)?$"),
]

MISSING_URL_MESSAGE = "Eh, where's your playlist URL lah?"
INVALID_URL_MESSAGE = (
    "Eh, that's not a proper Spotify playlist URL lah! "
    "Should be like: https://open.spotify.com/playlist/..."
)


@dataclass(frozen=True)
class Track:
    name: str
    artists: Tuple[str, ...]
    album: str = ""
    release_date: str = ""
    popularity: int = 0
    duration_ms: int = 0
    explicit: bool = False


@dataclass(frozen=True)
class PlaylistData:
    name: str
    description: str
    owner: str
    track_count: int
    tracks: Tuple[Track, ...]


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    playlist_id: Optional[str] = None
    error: Optional[str] = None


def extract_playlist_id(url: str) -> Optional[str]:
    for pattern in PLAYLIST_URL_PATTERNS:
        match = pattern.search(url)
        if match and match.group(1):
            return match.group(1)
    return None


def validate_playlist_url(url: Any) -> ValidationResult:
    if not url or not isinstance(url, str):
        return ValidationResult(False, None, MISSING_URL_MESSAGE)

    playlist_id = extract_playlist_id(url.strip())
    if not playlist_id:
        return ValidationResult(False, None, INVALID_URL_MESSAGE)
    return ValidationResult(True, playlist_id)


def parse_track(raw: Dict[str, Any]) -> Track:
    album = raw.get("album") or {}
    return Track(
        name=raw.get("name") or "",
        artists=tuple(
            a.get("name") for a in raw.get("artists") or [] if a.get("name")
        ),
        album=album.get("name") or "",
        release_date=album.get("release_date") or "",
        popularity=int(raw.get("popularity") or 0),
        duration_ms=int(raw.get("duration_ms") or 0),
        explicit=bool(raw.get("explicit")),
    )


def parse_playlist(playlist: Dict[str, Any], tracks_page: Dict[str, Any]) -> PlaylistData:
    tracks = tuple(
        parse_track(item["track"])
        for item in tracks_page.get("items") or []
        if isinstance(item, dict) and isinstance(item.get("track"), dict)
    )
    owner = playlist.get("owner") or {}
    total = (playlist.get("tracks") or {}).get("total")
    return PlaylistData(
        name=playlist.get("name") or "Untitled Playlist",
        description=playlist.get("description") or "",
        owner=owner.get("display_name") or "Unknown",
        track_count=int(total) if total else len(tracks),
        tracks=tracks,
    )


class SpotifyClient:
    """Read-only Spotify Web API access using the client-credentials flow."""

    def __init__(
        self,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._session = session or requests.Session()

    def _credentials(self) -> Tuple[str, str]:
        client_id = self._client_id or get_config_secret(
            "spotify_client_id", "spotify_client_id_param"
        )
        client_secret = self._client_secret or get_config_secret(
            "spotify_client_secret", "spotify_client_secret_param"
        )
        if not client_id or not client_secret:
            raise UpstreamUnavailable(
                "Spotify configuration error",
                {
                    "hint": "Check SPOTIFY_CLIENT_ID and SPOTIFY_CLIENT_SECRET "
                    "environment variables"
                },
            )
        return client_id, client_secret

    def get_access_token(self) -> str:
        client_id, client_secret = self._credentials()
        encoded = base64.b64encode(f"{client_id}:{client_secret}".encode("utf-8"))
        try:
            resp = self._session.post(
                TOKEN_URL,
                headers={
                    "Authorization": f"Basic {encoded.decode('ascii')}",
                    "Content-Type": "application/x-www-form-urlencoded",
                },
                data={"grant_type": "client_credentials"},
                timeout=REQUEST_TIMEOUT,
            )
        except requests.RequestException as exc:
            raise UpstreamUnavailable(
                "Spotify auth failed: network error", {"retry_after": 30}
            ) from exc
        if resp.status_code >= 400:
            log("warning", "Spotify token request failed", status=resp.status_code)
            raise UpstreamUnavailable(f"Spotify auth failed: {resp.status_code}")
        token = (resp.json() or {}).get("access_token")
        if not token:
            raise UpstreamUnavailable("Spotify auth failed: token missing")
        return token

    def _get(self, url: str, access_token: str, params: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = self._session.get(
                url,
                headers={"Authorization": f"Bearer {access_token}"},
                params=params,
                timeout=REQUEST_TIMEOUT,
            )
        except requests.Timeout as exc:
            raise UpstreamUnavailable(
                "Spotify request timeout", {"retry_after": 30}
            ) from exc
        except requests.RequestException as exc:
            raise UpstreamUnavailable(
                "Service temporarily unavailable", {"retry_after": 30}
            ) from exc

        if resp.status_code == 404:
            raise NotFoundError(ERROR_TEXT["playlist_not_found"])
        if resp.status_code == 429:
            raise RateLimitError(ERROR_TEXT["throttled"])
        if resp.status_code >= 500:
            log("warning", "Spotify GET failed", url=url, status=resp.status_code)
            raise UpstreamUnavailable(ERROR_TEXT["spotify"])
        if resp.status_code >= 400:
            log(
                "warning",
                "Spotify GET rejected",
                url=url,
                status=resp.status_code,
                body=resp.text,
            )
            raise HTTPError(f"Spotify API error: {resp.status_code}")
        return resp.json()

    def fetch_playlist_data(self, playlist_id: str) -> PlaylistData:
        started = time.monotonic()
        access_token = self.get_access_token()
        playlist_url = f"{API_BASE}/playlists/{playlist_id}"
        with ThreadPoolExecutor(max_workers=2) as pool:
            # workers need the caller context for run_id in log lines
            playlist_future = pool.submit(
                contextvars.copy_context().run,
                self._get,
                playlist_url,
                access_token,
                {"fields": PLAYLIST_FIELDS},
            )
            tracks_future = pool.submit(
                contextvars.copy_context().run,
                self._get,
                f"{playlist_url}/tracks",
                access_token,
                {"fields": TRACK_FIELDS, "limit": TRACK_PAGE_LIMIT},
            )
            playlist = playlist_future.result()
            tracks_page = tracks_future.result()

        data = parse_playlist(playlist, tracks_page)
        log(
            "info",
            "spotify_playlist_fetched",
            playlist_id=playlist_id,
            track_count=data.track_count,
            fetched_tracks=len(data.tracks),
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return data
