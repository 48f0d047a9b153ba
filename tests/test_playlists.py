from __future__ import annotations

import asyncio
import sys
import tempfile
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from playlist_bot.playlists import PlaylistService
from playlist_bot.spotify import SpotifyError
from playlist_bot.store import PlaylistRef, PlaylistStore

OWNER = "a" * 64


class FakeSpotify:
    def __init__(self) -> None:
        self.playlists: dict[str, list[str]] = {}
        self.created: list[dict] = []
        self.appends: list[tuple[str, list[str]]] = []
        self.reads: list[str] = []
        self.fail_read = False
        self.fail_append = False
        self.create_delay = 0.0

    async def create_playlist(self, name: str, *, description: str = "", public: bool = False) -> str:
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        playlist_id = f"PL{len(self.created) + 1}"
        self.created.append({"name": name, "description": description, "public": public})
        self.playlists[playlist_id] = []
        return playlist_id

    async def playlist_track_ids(self, playlist_id: str) -> list[str]:
        self.reads.append(playlist_id)
        if self.fail_read:
            raise SpotifyError(500, "read failed")
        return list(self.playlists.get(playlist_id, []))

    async def add_tracks(self, playlist_id: str, track_ids) -> None:
        if self.fail_append:
            raise SpotifyError(502, "append failed")
        self.appends.append((playlist_id, list(track_ids)))
        self.playlists.setdefault(playlist_id, []).extend(track_ids)

    async def close(self) -> None:
        return None


class PlaylistServiceTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.store = PlaylistStore(f"sqlite:///{self._tmp.name}/store.sqlite")
        self.spotify = FakeSpotify()
        self.service = PlaylistService(self.store, self.spotify)

    async def asyncTearDown(self) -> None:
        self.store.engine.dispose()
        self._tmp.cleanup()

    async def test_first_mention_creates_private_playlist(self) -> None:
        ref = await self.service.get_or_create(OWNER)
        self.assertTrue(ref.created)
        self.assertEqual(ref.playlist_id, "PL1")
        self.assertEqual(self.spotify.created, [{
            "name": f"Nostr Playlist — {OWNER}",
            "description": f"Created by the Nostr bot for {OWNER}",
            "public": False,
        }])
        self.assertEqual(self.store.get(OWNER).playlist_id, "PL1")

    async def test_name_hint_sets_title(self) -> None:
        await self.service.get_or_create(OWNER, "Chill")
        self.assertEqual(self.spotify.created[0]["name"], "Chill — Nostr Playlist")

    async def test_second_mention_reuses_playlist(self) -> None:
        first = await self.service.get_or_create(OWNER)
        second = await self.service.get_or_create(OWNER, "Other")
        self.assertEqual(first.playlist_id, second.playlist_id)
        self.assertFalse(second.created)
        self.assertEqual(len(self.spotify.created), 1)

    async def test_concurrent_mentions_create_one_playlist(self) -> None:
        self.spotify.create_delay = 0.01
        refs = await asyncio.gather(*(self.service.get_or_create(OWNER) for _ in range(4)))
        self.assertEqual({ref.playlist_id for ref in refs}, {"PL1"})
        self.assertEqual(len(self.spotify.created), 1)

    async def test_only_missing_tracks_are_appended(self) -> None:
        self.store.put(OWNER, PlaylistRef(playlist_id="EXISTING"))
        self.spotify.playlists["EXISTING"] = ["AAA"]
        result = await self.service.add_tracks(OWNER, ["AAA", "BBB"])
        self.assertEqual(self.spotify.appends, [("EXISTING", ["BBB"])])
        self.assertEqual(result.added_count, 1)
        self.assertEqual(result.requested_count, 2)
        self.assertFalse(result.degraded)

    async def test_nothing_new_skips_append(self) -> None:
        self.store.put(OWNER, PlaylistRef(playlist_id="EXISTING"))
        self.spotify.playlists["EXISTING"] = ["AAA", "BBB"]
        result = await self.service.add_tracks(OWNER, ["BBB", "AAA"])
        self.assertEqual(self.spotify.appends, [])
        self.assertEqual(result.added_count, 0)

    async def test_name_hint_reported_only_when_it_titled_the_playlist(self) -> None:
        created = await self.service.add_tracks(OWNER, ["AAA"], "Chill")
        self.assertEqual(created.name_hint, "Chill")
        reused = await self.service.add_tracks(OWNER, ["BBB"], "Focus")
        self.assertIsNone(reused.name_hint)
        self.assertEqual(reused.playlist_id, created.playlist_id)

    async def test_membership_failure_appends_everything(self) -> None:
        self.store.put(OWNER, PlaylistRef(playlist_id="EXISTING"))
        self.spotify.playlists["EXISTING"] = ["AAA"]
        self.spotify.fail_read = True
        with self.assertLogs("playlist_bot.playlists", level="WARNING"):
            result = await self.service.add_tracks(OWNER, ["AAA", "BBB"])
        self.assertEqual(self.spotify.appends, [("EXISTING", ["AAA", "BBB"])])
        self.assertEqual(result.added_count, 2)
        self.assertTrue(result.degraded)

    async def test_append_failure_propagates(self) -> None:
        self.spotify.fail_append = True
        with self.assertRaises(SpotifyError):
            await self.service.add_tracks(OWNER, ["AAA"])

    async def test_global_playlist_disabled_by_default(self) -> None:
        self.assertIsNone(await self.service.add_to_global(["AAA"]))
        self.assertEqual(self.spotify.reads, [])

    async def test_global_playlist_receives_new_tracks(self) -> None:
        service = PlaylistService(self.store, self.spotify, global_playlist_id="GLOBAL")
        self.spotify.playlists["GLOBAL"] = ["AAA"]
        result = await service.add_to_global(["AAA", "BBB"])
        self.assertEqual(result.playlist_id, "GLOBAL")
        self.assertEqual(result.added_count, 1)
        self.assertEqual(self.spotify.appends, [("GLOBAL", ["BBB"])])

    async def test_global_playlist_failure_is_not_fatal(self) -> None:
        service = PlaylistService(self.store, self.spotify, global_playlist_id="GLOBAL")
        self.spotify.fail_append = True
        with self.assertLogs("playlist_bot.playlists", level="WARNING"):
            self.assertIsNone(await service.add_to_global(["AAA"]))


if __name__ == "__main__":
    unittest.main()
