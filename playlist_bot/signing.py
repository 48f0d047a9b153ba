from __future__ import annotations
import json
from typing import Dict, Optional

from nostr_sdk import EventBuilder, Keys, Kind, PublicKey, Tag, Timestamp


class NostrSigner:
    """Bot identity backed by nostr-sdk keys. Accepts hex or nsec secrets."""

    def __init__(self, secret_key: str):
        if not secret_key:
            raise ValueError('secret key is required')
        self._keys = Keys.parse(secret_key.strip())
        self.public_key = self._keys.public_key().to_hex()

    def sign(self, template: Dict[str, object]) -> Dict[str, object]:
        builder = EventBuilder(Kind(int(template['kind'])), str(template.get('content') or ''))
        tags = [Tag.parse([str(part) for part in tag]) for tag in template.get('tags') or []]
        if tags:
            builder = builder.tags(tags)
        created_at = template.get('created_at')
        if created_at is not None:
            builder = builder.custom_created_at(Timestamp.from_secs(int(created_at)))
        event = builder.sign_with_keys(self._keys)
        return json.loads(event.as_json())


def to_npub(pubkey: str) -> Optional[str]:
    try:
        return PublicKey.parse(pubkey).to_bech32()
    except Exception:
        return None
