from __future__ import annotations
import asyncio
import json
import logging
import time
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Sequence

import aiohttp

from .store import PlaylistStore

logger = logging.getLogger(__name__)

API_BASE = "https://api.spotify.com/v1"
TOKEN_URL = "https://accounts.spotify.com/api/token"
PLAYLIST_URL = "https://open.spotify.com/playlist/{playlist_id}"
# Spotify accepts at most 100 URIs per add-items request.
ADD_BATCH_SIZE = 100
# Refresh this many seconds before the access token actually expires.
REFRESH_MARGIN = 60


class SpotifyError(RuntimeError):
    """Non-2xx answer from the Web API or the accounts service."""

    def __init__(self, status: int, detail: str):
        self.status = status
        self.detail = str(detail)
        super().__init__(f"Spotify {status}: {self.detail}")


def playlist_url(playlist_id: str) -> str:
    return PLAYLIST_URL.format(playlist_id=playlist_id)


def track_uri(track_id: str) -> str:
    return f"spotify:track:{track_id}"


def _chunk(items: Sequence[str], size: int) -> Iterable[Sequence[str]]:
    for index in range(0, len(items), size):
        yield items[index : index + size]


async def _error_detail(r: aiohttp.ClientResponse) -> str:
    detail: object = ''
    if r.headers.get('content-type', '').startswith('application/json'):
        try:
            data = await r.json()
        except Exception:
            data = None
        if isinstance(data, dict):
            err = data.get('error')
            if isinstance(err, dict):
                detail = err.get('message') or ''
            else:
                detail = data.get('error_description') or err or ''
    if not detail:
        try:
            detail = await r.text()
        except Exception:
            detail = ''
    return str(detail)


class SpotifyAuth:
    """Owns the bot's Spotify access token.

    Every API call goes through ``access_token()``, which refreshes the token
    with the stored refresh token when it is missing or about to expire and
    persists the result. Concurrent callers share one refresh.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        store: PlaylistStore,
        *,
        refresh_token: Optional[str] = None,
        token_url: str = TOKEN_URL,
        clock=time.time,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.store = store
        self._fallback_refresh = refresh_token
        self.token_url = token_url
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at: float = 0
        self._lock = asyncio.Lock()
        self.session: Optional[aiohttp.ClientSession] = None

    async def start(self):
        if not self.session:
            self.session = aiohttp.ClientSession()

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    def _token_valid(self) -> bool:
        return bool(self._token) and self._clock() < self._expires_at - REFRESH_MARGIN

    async def access_token(self) -> str:
        if self._token_valid():
            return self._token
        async with self._lock:
            if self._token_valid():
                return self._token
            await self._refresh()
            return self._token

    def invalidate(self) -> None:
        self._token = None
        self._expires_at = 0

    async def _refresh(self) -> None:
        stored = await asyncio.to_thread(self.store.load_credentials)
        refresh_token = (stored.refresh_token if stored else None) or self._fallback_refresh
        if not refresh_token:
            raise SpotifyError(401, 'no Spotify refresh token; complete the OAuth flow first')
        if not self.session:
            await self.start()
        auth = aiohttp.BasicAuth(self.client_id, self.client_secret)
        data = {'grant_type': 'refresh_token', 'refresh_token': refresh_token}
        async with self.session.post(self.token_url, data=data, auth=auth) as r:
            if r.status >= 400:
                raise SpotifyError(r.status, await _error_detail(r) or 'token refresh failed')
            payload = await r.json()
        token = payload.get('access_token')
        if not token:
            raise SpotifyError(502, 'token refresh response missing access_token')
        expires_in = int(payload.get('expires_in') or 3600)
        self._token = token
        self._expires_at = self._clock() + expires_in
        logger.info("Refreshed Spotify access token (expires in %ss)", expires_in)
        await asyncio.to_thread(
            self.store.save_credentials,
            access_token=token,
            refresh_token=payload.get('refresh_token'),
            expires_at=datetime.utcnow() + timedelta(seconds=expires_in),
        )


class SpotifyClient:
    def __init__(self, auth: SpotifyAuth, base_url: str = API_BASE):
        self.auth = auth
        self.base = base_url.rstrip('/')
        self.session: Optional[aiohttp.ClientSession] = None

    async def start(self):
        if not self.session:
            self.session = aiohttp.ClientSession()

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None
        await self.auth.close()

    async def _req(self, method: str, path_or_url: str, payload: Optional[dict] = None, *, retry_auth: bool = True):
        if not self.session:
            await self.start()
        url = path_or_url if path_or_url.startswith('http') else f"{self.base}{path_or_url}"
        token = await self.auth.access_token()
        headers = {'Authorization': f'Bearer {token}', 'Content-Type': 'application/json'}
        async with self.session.request(method, url, headers=headers, data=json.dumps(payload) if payload else None) as r:
            if r.status == 401 and retry_auth:
                self.auth.invalidate()
            elif r.status >= 400:
                raise SpotifyError(r.status, await _error_detail(r) or f"{method} {url} failed")
            else:
                if r.headers.get('content-type', '').startswith('application/json'):
                    return await r.json()
                return await r.text()
        # Token was rejected; refresh once and retry.
        return await self._req(method, path_or_url, payload, retry_auth=False)

    async def playlist_track_ids(self, playlist_id: str) -> List[str]:
        ids: List[str] = []
        url: Optional[str] = f"/playlists/{playlist_id}/tracks?fields=items(track(id)),next&limit=100"
        while url:
            page = await self._req('GET', url)
            for item in page.get('items') or []:
                track = item.get('track') or {}
                if track.get('id'):
                    ids.append(track['id'])
            url = page.get('next')
        return ids

    async def add_tracks(self, playlist_id: str, track_ids: Sequence[str]) -> None:
        uris = [track_uri(t) for t in track_ids]
        for batch in _chunk(uris, ADD_BATCH_SIZE):
            await self._req('POST', f"/playlists/{playlist_id}/tracks", {'uris': list(batch)})

    async def create_playlist(self, name: str, *, description: str = '', public: bool = False) -> str:
        resp = await self._req('POST', "/me/playlists", {
            'name': name,
            'description': description,
            'public': public,
        })
        return resp['id']
