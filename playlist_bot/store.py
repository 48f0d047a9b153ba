from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import Column, DateTime, Integer, String, Text, create_engine, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

Base = declarative_base()


class PlaylistMapping(Base):
    __tablename__ = "playlist_mappings"
    id = Column(Integer, primary_key=True)
    owner_pubkey = Column(String, nullable=False, unique=True)
    playlist_id = Column(String, nullable=False)
    title = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class SpotifyCredentials(Base):
    __tablename__ = "spotify_credentials"
    id = Column(Integer, primary_key=True)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


@dataclass(frozen=True)
class PlaylistRef:
    playlist_id: str
    title: Optional[str] = None
    created: bool = False


@dataclass
class StoredCredentials:
    access_token: Optional[str]
    refresh_token: Optional[str]
    expires_at: Optional[datetime]


class PlaylistStore:
    """Durable owner -> playlist mapping plus the bot's Spotify credentials.

    ``put`` is an insert guarded by the unique owner constraint: when two
    writers race, the first row wins and the loser gets the stored mapping
    back instead of overwriting it.
    """

    CREDENTIALS_ROW = 1

    def __init__(self, db_url: str):
        kwargs: Dict[str, object] = {}
        if db_url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if db_url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
        self.engine = create_engine(db_url, **kwargs)
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, autocommit=False)
        Base.metadata.create_all(bind=self.engine)

    def session(self) -> Session:
        return self.SessionLocal()

    def get(self, owner: str) -> Optional[PlaylistRef]:
        db = self.session()
        try:
            row = (
                db.query(PlaylistMapping)
                .filter(PlaylistMapping.owner_pubkey == owner)
                .one_or_none()
            )
            if not row:
                return None
            return PlaylistRef(playlist_id=row.playlist_id, title=row.title)
        finally:
            db.close()

    def put(self, owner: str, ref: PlaylistRef) -> PlaylistRef:
        db = self.session()
        try:
            db.add(PlaylistMapping(owner_pubkey=owner, playlist_id=ref.playlist_id, title=ref.title))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                existing = (
                    db.query(PlaylistMapping)
                    .filter(PlaylistMapping.owner_pubkey == owner)
                    .one()
                )
                logger.warning(
                    "Playlist for %s already stored as %s; discarding %s",
                    owner,
                    existing.playlist_id,
                    ref.playlist_id,
                )
                return PlaylistRef(playlist_id=existing.playlist_id, title=existing.title)
            return ref
        finally:
            db.close()

    def load_credentials(self) -> Optional[StoredCredentials]:
        db = self.session()
        try:
            row = db.get(SpotifyCredentials, self.CREDENTIALS_ROW)
            if not row:
                return None
            return StoredCredentials(
                access_token=row.access_token,
                refresh_token=row.refresh_token,
                expires_at=row.expires_at,
            )
        finally:
            db.close()

    def save_credentials(
        self,
        *,
        access_token: Optional[str],
        refresh_token: Optional[str],
        expires_at: Optional[datetime],
    ) -> None:
        db = self.session()
        try:
            row = db.get(SpotifyCredentials, self.CREDENTIALS_ROW)
            if not row:
                row = SpotifyCredentials(id=self.CREDENTIALS_ROW)
                db.add(row)
            row.access_token = access_token
            # Spotify omits the refresh token when it is unchanged.
            if refresh_token:
                row.refresh_token = refresh_token
            row.expires_at = expires_at
            row.updated_at = datetime.utcnow()
            db.commit()
        finally:
            db.close()

    def count(self) -> int:
        db = self.session()
        try:
            return db.query(func.count(PlaylistMapping.id)).scalar() or 0
        finally:
            db.close()

    def leaderboard(self) -> List[Dict[str, object]]:
        db = self.session()
        try:
            rows = db.query(PlaylistMapping).order_by(PlaylistMapping.created_at.asc(), PlaylistMapping.id.asc()).all()
            return [
                {
                    "pubkey": row.owner_pubkey,
                    "playlist_id": row.playlist_id,
                    "title": row.title,
                    "created_at": row.created_at,
                }
                for row in rows
            ]
        finally:
            db.close()

    def ping(self) -> None:
        with self.engine.connect() as _:
            pass
