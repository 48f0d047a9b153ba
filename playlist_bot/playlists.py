from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence

from .spotify import SpotifyClient
from .store import PlaylistRef, PlaylistStore

logger = logging.getLogger(__name__)

DEFAULT_PLAYLIST_TEXT = {
    'playlist_title': 'Nostr Playlist — {owner}',
    'playlist_title_named': '{name} — Nostr Playlist',
    'playlist_description': 'Created by the Nostr bot for {owner}',
}


@dataclass(frozen=True)
class AddResult:
    playlist_id: str
    added_count: int
    requested_count: int
    # Hashtag name the playlist was created with on this call, if any.
    name_hint: Optional[str] = None
    degraded: bool = False


class PlaylistService:
    """Keeps every mentioned track in its owner's playlist exactly once."""

    def __init__(
        self,
        store: PlaylistStore,
        spotify: SpotifyClient,
        *,
        messages: Optional[Mapping[str, str]] = None,
        global_playlist_id: Optional[str] = None,
    ):
        self.store = store
        self.spotify = spotify
        self.messages = {**DEFAULT_PLAYLIST_TEXT, **(messages or {})}
        self.global_playlist_id = global_playlist_id
        self._owner_locks: Dict[str, asyncio.Lock] = {}
        self._global_lock = asyncio.Lock()

    def _lock_for(self, owner: str) -> asyncio.Lock:
        lock = self._owner_locks.get(owner)
        if lock is None:
            lock = self._owner_locks[owner] = asyncio.Lock()
        return lock

    def playlist_title(self, owner: str, name_hint: Optional[str]) -> str:
        if name_hint:
            return self.messages['playlist_title_named'].format(name=name_hint, owner=owner)
        return self.messages['playlist_title'].format(owner=owner)

    async def get_or_create(self, owner: str, name_hint: Optional[str] = None) -> PlaylistRef:
        async with self._lock_for(owner):
            existing = await asyncio.to_thread(self.store.get, owner)
            if existing:
                return existing
            title = self.playlist_title(owner, name_hint)
            playlist_id = await self.spotify.create_playlist(
                title,
                description=self.messages['playlist_description'].format(owner=owner),
                public=False,
            )
            logger.info("Created playlist %s (%s) for %s", playlist_id, title, owner)
            stored = await asyncio.to_thread(
                self.store.put, owner, PlaylistRef(playlist_id=playlist_id, title=title)
            )
            if stored.playlist_id != playlist_id:
                return stored
            return PlaylistRef(playlist_id=playlist_id, title=title, created=True)

    async def _missing_tracks(self, playlist_id: str, track_ids: Sequence[str]) -> Optional[List[str]]:
        try:
            present = set(await self.spotify.playlist_track_ids(playlist_id))
        except Exception as exc:
            logger.warning(
                "Could not read playlist %s; appending all %d track(s): %s",
                playlist_id,
                len(track_ids),
                exc,
            )
            return None
        return [t for t in track_ids if t not in present]

    async def _append_new(self, playlist_id: str, track_ids: Sequence[str]) -> tuple[int, bool]:
        to_add = await self._missing_tracks(playlist_id, track_ids)
        degraded = to_add is None
        if degraded:
            to_add = list(track_ids)
        if to_add:
            await self.spotify.add_tracks(playlist_id, to_add)
        return len(to_add), degraded

    async def add_tracks(self, owner: str, track_ids: Sequence[str], name_hint: Optional[str] = None) -> AddResult:
        ref = await self.get_or_create(owner, name_hint)
        async with self._lock_for(owner):
            added, degraded = await self._append_new(ref.playlist_id, track_ids)
        logger.info(
            "Added %d of %d track(s) to %s for %s%s",
            added,
            len(track_ids),
            ref.playlist_id,
            owner,
            ' (membership check skipped)' if degraded else '',
        )
        return AddResult(
            playlist_id=ref.playlist_id,
            added_count=added,
            requested_count=len(track_ids),
            name_hint=name_hint if ref.created else None,
            degraded=degraded,
        )

    async def add_to_global(self, track_ids: Sequence[str]) -> Optional[AddResult]:
        if not self.global_playlist_id:
            return None
        try:
            async with self._global_lock:
                added, degraded = await self._append_new(self.global_playlist_id, track_ids)
        except Exception as exc:
            logger.warning("Failed to add tracks to global playlist %s: %s", self.global_playlist_id, exc)
            return None
        return AddResult(
            playlist_id=self.global_playlist_id,
            added_count=added,
            requested_count=len(track_ids),
            degraded=degraded,
        )
