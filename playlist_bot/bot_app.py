from __future__ import annotations
import os, asyncio, enum, json, logging, sys, time, uuid, yaml
from typing import Callable, Dict, List, Mapping, Optional, Protocol
from dataclasses import dataclass, field
from pathlib import Path

from .mentions import (
    METADATA_KIND,
    NOTE_KIND,
    InboundEvent,
    SeenEvents,
    extract_name_hint,
    extract_track_ids,
    is_mention,
    mention_filter,
    resolve_attribution,
)
from .playlists import AddResult, PlaylistService
from .relays import RelayConnection, RelayPool
from .signing import NostrSigner
from .spotify import SpotifyAuth, SpotifyClient, playlist_url
from .store import PlaylistStore

logger = logging.getLogger(__name__)

DEFAULT_MESSAGES = {
    'added': '✅ Added {count} track(s): {url}',
    'added_named': '✅ Added {count} track(s) to "{name}": {url}',
    'nothing_new': '✅ Those track(s) are already in your playlist: {url}',
    'global_added': 'Also added to the global playlist: {url}',
    'playlist_title': 'Nostr Playlist — {owner}',
    'playlist_title_named': '{name} — Nostr Playlist',
    'playlist_description': 'Created by the Nostr bot for {owner}',
}

EXIT_CONFIG_ERROR = 2
EXIT_NO_RELAYS = 1


class ConfigError(ValueError):
    pass


class NoRelaysError(RuntimeError):
    pass


class Signer(Protocol):
    public_key: str

    def sign(self, template: Dict[str, object]) -> Dict[str, object]: ...


class MentionState(enum.Enum):
    FILTERED_OUT = 'filtered_out'
    DUPLICATE = 'duplicate'
    NO_IDS = 'no_ids'
    DONE = 'done'
    FAILED = 'failed'


@dataclass
class BotSettings:
    secret_key: str
    relays: List[str]
    spotify_client_id: Optional[str] = None
    spotify_client_secret: Optional[str] = None
    spotify_refresh_token: Optional[str] = None
    database_url: str = 'sqlite:///playlist_bot.sqlite'
    bot_name: str = ''
    bot_avatar: str = ''
    bot_about: str = ''
    connect_timeout: float = 5.0
    reconnect_delay: float = 10.0
    seen_ttl: float = 600.0
    thread_attribution: bool = False
    global_playlist_id: Optional[str] = None
    messages_path: Path = field(default_factory=lambda: Path('messages.yml'))
    log_level: str = 'INFO'


TRUTHY = frozenset({"1", "true", "yes", "on"})


def _env_flag(environ: Mapping[str, str], name: str) -> bool:
    return (environ.get(name) or "").strip().lower() in TRUTHY


def _env_number(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f'{name} must be a number, got {raw!r}') from exc
    if value < 0:
        raise ConfigError(f'{name} must not be negative')
    return value


def load_settings(environ: Optional[Mapping[str, str]] = None) -> BotSettings:
    env = os.environ if environ is None else environ
    secret_key = (env.get('BOT_NOSTR_PRIVATE_KEY') or '').strip()
    relays = [url.strip() for url in (env.get('NOSTR_RELAYS') or '').split(',') if url.strip()]
    missing: List[str] = []
    if not secret_key:
        missing.append('BOT_NOSTR_PRIVATE_KEY')
    if not relays:
        missing.append('NOSTR_RELAYS')
    if missing:
        raise ConfigError('Missing required configuration: ' + ', '.join(missing))
    return BotSettings(
        secret_key=secret_key,
        relays=relays,
        spotify_client_id=env.get('SPOTIFY_CLIENT_ID') or None,
        spotify_client_secret=env.get('SPOTIFY_CLIENT_SECRET') or None,
        spotify_refresh_token=env.get('SPOTIFY_REFRESH_TOKEN') or None,
        database_url=env.get('DATABASE_URL') or 'sqlite:///playlist_bot.sqlite',
        bot_name=env.get('BOT_NAME') or env.get('NEXT_PUBLIC_BOT_NAME') or '',
        bot_avatar=env.get('BOT_AVATAR') or env.get('NEXT_PUBLIC_BOT_AVATAR') or '',
        bot_about=env.get('BOT_ABOUT') or env.get('NEXT_PUBLIC_BOT_ABOUT') or '',
        connect_timeout=_env_number(env, 'RELAY_CONNECT_TIMEOUT_MS', 5000) / 1000,
        reconnect_delay=_env_number(env, 'RELAY_RECONNECT_SECONDS', 10),
        seen_ttl=_env_number(env, 'SEEN_EVENT_TTL_SECONDS', 600),
        thread_attribution=_env_flag(env, "THREAD_ATTRIBUTION"),
        global_playlist_id=env.get('GLOBAL_PLAYLIST_ID') or None,
        messages_path=Path(env.get('BOT_MESSAGES_PATH') or 'messages.yml'),
        log_level=(env.get('LOG_LEVEL') or 'INFO').upper(),
    )


def load_messages(path: Path) -> Dict[str, str]:
    cfg: Dict[str, str] = DEFAULT_MESSAGES.copy()
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
            cfg.update({k: str(v) for k, v in data.items()})
    except FileNotFoundError:
        pass
    return cfg


def build_reply_text(
    messages: Mapping[str, str],
    result: AddResult,
    global_result: Optional[AddResult] = None,
) -> str:
    url = playlist_url(result.playlist_id)
    if result.added_count == 0:
        text = messages['nothing_new'].format(url=url, count=0)
    elif result.name_hint:
        text = messages['added_named'].format(count=result.added_count, name=result.name_hint, url=url)
    else:
        text = messages['added'].format(count=result.added_count, url=url)
    if global_result is not None:
        text = f"{text} {messages['global_added'].format(url=playlist_url(global_result.playlist_id))}"
    return text


def build_reply(
    mention: InboundEvent,
    bot_pubkey: str,
    content: str,
    created_at: int,
) -> Dict[str, object]:
    return {
        'kind': NOTE_KIND,
        'pubkey': bot_pubkey,
        'created_at': created_at,
        'tags': [['e', mention.id], ['p', mention.pubkey]],
        'content': content,
    }


class MentionBot:
    def __init__(
        self,
        *,
        signer: Signer,
        pool: RelayPool,
        playlists: PlaylistService,
        messages: Optional[Mapping[str, str]] = None,
        seen: Optional[SeenEvents] = None,
        thread_attribution: bool = False,
        profile: Optional[Dict[str, str]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.signer = signer
        self.pubkey = signer.public_key
        self.pool = pool
        self.playlists = playlists
        self.messages = {**DEFAULT_MESSAGES, **(messages or {})}
        self.seen = seen if seen is not None else SeenEvents(0)
        self.thread_attribution = thread_attribution
        self.profile = profile or {}
        self._clock = clock
        self.started_at = int(clock())
        self.sub_id = f"mentions-{uuid.uuid4().hex[:12]}"

    def subscription_filter(self, conn: Optional[RelayConnection] = None) -> dict:
        since = self.started_at
        if conn is not None and conn.last_seen is not None:
            since = max(since, conn.last_seen)
        return mention_filter(self.pubkey, since=since)

    async def publish_metadata(self) -> None:
        content = json.dumps({
            'name': self.profile.get('name') or '',
            'picture': self.profile.get('picture') or '',
            'about': self.profile.get('about') or '',
        })
        try:
            signed = self.signer.sign({
                'kind': METADATA_KIND,
                'pubkey': self.pubkey,
                'created_at': int(self._clock()),
                'tags': [],
                'content': content,
            })
            await self.pool.publish(signed)
            logger.info("Bot metadata published")
        except Exception as exc:
            logger.warning("Metadata publish failed: %s", exc)

    async def run(self) -> None:
        live = await self.pool.connect_all()
        if not live:
            raise NoRelaysError('could not connect to any relay')
        logger.info(
            "Listening for mentions of %s on %d/%d relay(s)",
            self.pubkey,
            len(live),
            len(self.pool.urls),
        )
        await self.publish_metadata()
        await self.pool.run(self.sub_id, self.subscription_filter, self.handle_event)

    async def handle_event(self, relay_url: str, payload: dict) -> MentionState:
        try:
            event = InboundEvent.from_payload(payload)
        except ValueError as exc:
            logger.debug("Discarding malformed event from %s: %s", relay_url, exc)
            return MentionState.FILTERED_OUT
        if not is_mention(event, self.pubkey):
            return MentionState.FILTERED_OUT
        if not self.seen.check_and_add(event.id):
            logger.info("Mention %s already handled; ignoring copy from %s", event.id, relay_url)
            return MentionState.DUPLICATE
        track_ids = extract_track_ids(event.content)
        if not track_ids:
            logger.info("Mention %s from %s has no track links", event.id, event.pubkey)
            return MentionState.NO_IDS
        try:
            return await self._process(relay_url, event, track_ids)
        except Exception:
            logger.exception("Failed to process mention %s from %s", event.id, relay_url)
            return MentionState.FAILED

    async def _process(self, relay_url: str, event: InboundEvent, track_ids: List[str]) -> MentionState:
        owner = resolve_attribution(event) if self.thread_attribution else event.pubkey
        name_hint = extract_name_hint(event.content)
        logger.info(
            "Mention %s via %s: %d track(s) for %s",
            event.id,
            relay_url,
            len(track_ids),
            owner,
        )
        result = await self.playlists.add_tracks(owner, track_ids, name_hint)
        global_result = await self.playlists.add_to_global(track_ids)
        content = build_reply_text(self.messages, result, global_result)
        signed = self.signer.sign(build_reply(event, self.pubkey, content, int(self._clock())))
        outcomes = await self.pool.publish(signed)
        delivered = [url for url, err in outcomes.items() if err is None]
        logger.info(
            "Replied to %s (%d/%d track(s) new) on %d/%d relay(s)",
            event.id,
            result.added_count,
            result.requested_count,
            len(delivered),
            len(outcomes),
        )
        return MentionState.DONE


def build_bot(settings: BotSettings) -> MentionBot:
    if not settings.spotify_client_id or not settings.spotify_client_secret:
        raise ConfigError('Missing required configuration: SPOTIFY_CLIENT_ID, SPOTIFY_CLIENT_SECRET')
    try:
        signer = NostrSigner(settings.secret_key)
    except Exception as exc:
        raise ConfigError(f'Invalid BOT_NOSTR_PRIVATE_KEY: {exc}') from exc
    messages = load_messages(settings.messages_path)
    store = PlaylistStore(settings.database_url)
    auth = SpotifyAuth(
        settings.spotify_client_id,
        settings.spotify_client_secret,
        store,
        refresh_token=settings.spotify_refresh_token,
    )
    playlists = PlaylistService(
        store,
        SpotifyClient(auth),
        messages=messages,
        global_playlist_id=settings.global_playlist_id,
    )
    pool = RelayPool(
        settings.relays,
        connect_timeout=settings.connect_timeout,
        reconnect_delay=settings.reconnect_delay,
    )
    return MentionBot(
        signer=signer,
        pool=pool,
        playlists=playlists,
        messages=messages,
        seen=SeenEvents(settings.seen_ttl),
        thread_attribution=settings.thread_attribution,
        profile={
            'name': settings.bot_name,
            'picture': settings.bot_avatar,
            'about': settings.bot_about,
        },
    )


async def run_bot(bot: MentionBot) -> int:
    try:
        await bot.run()
    except NoRelaysError as exc:
        logger.error("Giving up: %s", exc)
        return EXIT_NO_RELAYS
    finally:
        await bot.pool.close()
        await bot.playlists.spotify.close()
    return 0


# ---- entry ----
def main() -> int:
    try:
        settings = load_settings()
    except ConfigError as exc:
        logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s %(name)s: %(message)s')
        logger.error("%s", exc)
        return EXIT_CONFIG_ERROR
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    try:
        bot = build_bot(settings)
    except ConfigError as exc:
        logger.error("%s", exc)
        return EXIT_CONFIG_ERROR
    try:
        return asyncio.run(run_bot(bot))
    except KeyboardInterrupt:
        return 0


if __name__ == '__main__':
    sys.exit(main())
