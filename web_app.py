from __future__ import annotations
import html
import logging
import os
import secrets
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import requests
from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import HTMLResponse, RedirectResponse
from pydantic import BaseModel

from playlist_bot.signing import to_npub
from playlist_bot.spotify import TOKEN_URL, playlist_url
from playlist_bot.store import PlaylistStore

# =====================================
# Config
# =====================================
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///playlist_bot.sqlite")
SPOTIFY_CLIENT_ID = os.getenv("SPOTIFY_CLIENT_ID")
SPOTIFY_CLIENT_SECRET = os.getenv("SPOTIFY_CLIENT_SECRET")
SPOTIFY_REDIRECT_URI = os.getenv("SPOTIFY_REDIRECT_URI", "http://localhost:8000/auth/callback")
SPOTIFY_AUTHORIZE_URL = "https://accounts.spotify.com/authorize"
SPOTIFY_SCOPES = ["playlist-modify-private", "playlist-modify-public"]

API_VERSION = "0.1.0"
# Pending OAuth states are dropped after this many seconds.
OAUTH_STATE_TTL = 600

_oauth_states: Dict[str, float] = {}

logger = logging.getLogger(__name__)

_store: Optional[PlaylistStore] = None


def get_store() -> PlaylistStore:
    global _store
    if _store is None:
        _store = PlaylistStore(DATABASE_URL)
    return _store


# =====================================
# Schemas
# =====================================
class StatsOut(BaseModel):
    total: int


class LeaderboardEntryOut(BaseModel):
    pubkey: str
    npub: Optional[str] = None
    playlist_url: str
    title: Optional[str] = None
    created_at: Optional[datetime] = None


app = FastAPI(title="Nostr Playlist Bot", version=API_VERSION)


def _cleanup_oauth_states() -> None:
    cutoff = time.time() - OAUTH_STATE_TTL
    for nonce, created in list(_oauth_states.items()):
        if created < cutoff:
            _oauth_states.pop(nonce, None)


def _oauth_html_response(success: bool, message: str, *, status_code: int = 200) -> HTMLResponse:
    title = "Spotify connected" if success else "Spotify connection failed"
    mark = "✅" if success else "❌"
    body = f"""<!doctype html>
<html>
  <head><meta charset="utf-8"><title>{html.escape(title)}</title></head>
  <body>
    <h1>{mark} {html.escape(title)}</h1>
    <p>{html.escape(message)}</p>
  </body>
</html>
"""
    return HTMLResponse(content=body, status_code=status_code)


# =====================================
# Routes: Spotify OAuth
# =====================================
@app.get("/auth/login")
def auth_login():
    if not SPOTIFY_CLIENT_ID:
        raise HTTPException(status_code=500, detail="Spotify OAuth not configured")
    _cleanup_oauth_states()
    nonce = secrets.token_urlsafe(24)
    _oauth_states[nonce] = time.time()
    query = urlencode({
        "client_id": SPOTIFY_CLIENT_ID,
        "response_type": "code",
        "redirect_uri": SPOTIFY_REDIRECT_URI,
        "scope": " ".join(SPOTIFY_SCOPES),
        "state": nonce,
    })
    return RedirectResponse(f"{SPOTIFY_AUTHORIZE_URL}?{query}", status_code=302)


@app.get("/auth/callback")
def auth_callback(
    state: str,
    code: Optional[str] = None,
    error: Optional[str] = None,
    store: PlaylistStore = Depends(get_store),
):
    _cleanup_oauth_states()
    if not state or _oauth_states.pop(state, None) is None:
        raise HTTPException(status_code=400, detail="state expired or invalid")
    if error or not code:
        return _oauth_html_response(False, f"Spotify denied access: {error or 'missing code'}", status_code=400)
    if not SPOTIFY_CLIENT_ID or not SPOTIFY_CLIENT_SECRET:
        raise HTTPException(status_code=500, detail="Spotify OAuth not configured")
    try:
        token_response = requests.post(
            TOKEN_URL,
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": SPOTIFY_REDIRECT_URI,
            },
            auth=(SPOTIFY_CLIENT_ID, SPOTIFY_CLIENT_SECRET),
            timeout=10,
        )
        token_response.raise_for_status()
    except requests.RequestException as exc:
        logger.exception("failed to exchange spotify oauth code: %s", exc)
        return _oauth_html_response(False, "Failed to exchange authorization code with Spotify.", status_code=502)
    try:
        payload: Dict[str, Any] = token_response.json()
    except ValueError:
        return _oauth_html_response(False, "Invalid response from Spotify during authorization.", status_code=502)
    access_token = payload.get("access_token")
    refresh_token = payload.get("refresh_token")
    if not access_token or not refresh_token:
        return _oauth_html_response(False, "Authorization response missing tokens.", status_code=502)
    expires_at: Optional[datetime] = None
    expires_in = payload.get("expires_in")
    if isinstance(expires_in, (int, float)) and expires_in > 0:
        expires_at = datetime.utcnow() + timedelta(seconds=int(expires_in))
    store.save_credentials(access_token=access_token, refresh_token=refresh_token, expires_at=expires_at)
    logger.info("Stored Spotify credentials from OAuth callback")
    return _oauth_html_response(True, "You can close this window.")


# =====================================
# Routes: Stats
# =====================================
@app.get("/stats", response_model=StatsOut)
def stats(store: PlaylistStore = Depends(get_store)):
    return {"total": store.count()}


@app.get("/leaderboard", response_model=List[LeaderboardEntryOut])
def leaderboard(store: PlaylistStore = Depends(get_store)):
    return [
        {
            "pubkey": row["pubkey"],
            "npub": to_npub(row["pubkey"]),
            "playlist_url": playlist_url(row["playlist_id"]),
            "title": row["title"],
            "created_at": row["created_at"],
        }
        for row in store.leaderboard()
    ]


@app.get("/system/health")
def health(store: PlaylistStore = Depends(get_store)):
    try:
        store.ping()
        return {"status": "ok"}
    except Exception as e:
        raise HTTPException(500, detail=str(e))
