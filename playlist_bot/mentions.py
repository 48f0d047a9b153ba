from __future__ import annotations
import re
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

NOTE_KIND = 1
METADATA_KIND = 0

TRACK_PATTERN = re.compile(r"open\.spotify\.com/track/([A-Za-z0-9]+)")
HASHTAG_PATTERN = re.compile(r"(?:^|\s)#(\w+)")
PUBKEY_PATTERN = re.compile(r"^[0-9a-f]{64}$")


@dataclass(frozen=True)
class InboundEvent:
    id: str
    pubkey: str
    created_at: int
    kind: int
    tags: Tuple[Tuple[str, ...], ...]
    content: str

    @classmethod
    def from_payload(cls, payload: object) -> "InboundEvent":
        if not isinstance(payload, dict):
            raise ValueError('event payload must be an object')
        try:
            event_id = payload['id']
            pubkey = payload['pubkey']
            kind = int(payload['kind'])
            created_at = int(payload.get('created_at') or 0)
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f'malformed event: {exc}') from exc
        if not isinstance(event_id, str) or not isinstance(pubkey, str):
            raise ValueError('event id and pubkey must be strings')
        raw_tags = payload.get('tags') or []
        if not isinstance(raw_tags, list):
            raise ValueError('event tags must be a list')
        tags = tuple(
            tuple(str(part) for part in tag)
            for tag in raw_tags
            if isinstance(tag, list) and tag
        )
        content = payload.get('content')
        return cls(
            id=event_id,
            pubkey=pubkey,
            created_at=created_at,
            kind=kind,
            tags=tags,
            content=content if isinstance(content, str) else '',
        )


def is_mention(event: InboundEvent, bot_pubkey: str, kind: int = NOTE_KIND) -> bool:
    if event.kind != kind:
        return False
    if event.pubkey == bot_pubkey:
        return False
    return any(len(tag) >= 2 and tag[0] == 'p' and tag[1] == bot_pubkey for tag in event.tags)


def extract_track_ids(content: str) -> List[str]:
    seen = set()
    ids: List[str] = []
    for match in TRACK_PATTERN.finditer(content or ''):
        track_id = match.group(1)
        if track_id not in seen:
            seen.add(track_id)
            ids.append(track_id)
    return ids


def extract_name_hint(content: str) -> Optional[str]:
    m = HASHTAG_PATTERN.search(content or '')
    return m.group(1) if m else None


def resolve_attribution(event: InboundEvent) -> str:
    """Return the pubkey a mention should be credited to.

    A reply carrying exactly one root-marked ``e`` tag with the root author's
    pubkey (NIP-10 positions 3 and 4) is credited to that author. Anything
    else, including several roots or a reply pointer without a root, is
    credited to the mentioning author.
    """
    roots = [tag for tag in event.tags if len(tag) >= 4 and tag[0] == 'e' and tag[3] == 'root']
    if len(roots) != 1:
        return event.pubkey
    root = roots[0]
    if len(root) >= 5 and PUBKEY_PATTERN.match(root[4]):
        return root[4]
    return event.pubkey


class SeenEvents:
    """Short-lived set of event ids already handled.

    The same note usually arrives once per relay; with a positive TTL the
    second copy is dropped. ``ttl <= 0`` disables the cache so every delivery
    is processed.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._expiry: Dict[str, float] = {}

    @property
    def enabled(self) -> bool:
        return self.ttl > 0

    def _prune(self, now: float) -> None:
        expired = [event_id for event_id, until in self._expiry.items() if until <= now]
        for event_id in expired:
            del self._expiry[event_id]

    def check_and_add(self, event_id: str) -> bool:
        """Record ``event_id``; return False if it was already seen."""
        if not self.enabled:
            return True
        now = self._clock()
        self._prune(now)
        if event_id in self._expiry:
            return False
        self._expiry[event_id] = now + self.ttl
        return True

    def __len__(self) -> int:
        return len(self._expiry)


def mention_filter(bot_pubkey: str, since: Optional[int] = None, kinds: Sequence[int] = (NOTE_KIND,)) -> Dict[str, object]:
    flt: Dict[str, object] = {'kinds': list(kinds), '#p': [bot_pubkey]}
    if since is not None:
        flt['since'] = int(since)
    return flt
