# statcache/store.py
"""
Durable storage for rosters, match records and cache snapshots.

SqlStore runs synchronous SQLAlchemy sessions in a worker thread so the
event loop never blocks on the database.
"""
import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Protocol, TypeVar

from pydantic import ValidationError
from sqlalchemy import JSON, Float, Integer, String, create_engine, delete, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from statcache.config import DATABASE_URL
from statcache.errors import PersistenceFailure
from statcache.models import MatchRecord, SnapshotInfo, UserCacheEntry, UserRecord

log = logging.getLogger("store")

T = TypeVar("T")


class SnapshotStore(Protocol):
  async def get_community_roster(self, community_id: str) -> Dict[str, UserRecord]: ...

  async def save_cache_snapshot(self, community_id: str, entries: Dict[str, UserCacheEntry], built_at: float) -> None: ...

  async def load_cache_snapshot(self, community_id: str) -> Dict[str, UserCacheEntry]: ...

  async def delete_cache_snapshot(self, community_id: str) -> None: ...

  async def delete_all_snapshots(self) -> None: ...

  async def list_communities_with_snapshots(self) -> List[SnapshotInfo]: ...


# ----------------------------
# Tables
# ----------------------------
class Base(DeclarativeBase):
  pass


class CommunityMember(Base):
  __tablename__ = "community_members"

  community_id: Mapped[str] = mapped_column(String(64), primary_key=True)
  user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
  player_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
  display_name: Mapped[str] = mapped_column(String(128), nullable=False, default="")


class CacheSnapshot(Base):
  """One serialized {user_id: UserCacheEntry} map per community."""

  __tablename__ = "cache_snapshots"

  community_id: Mapped[str] = mapped_column(String(64), primary_key=True)
  built_at: Mapped[float] = mapped_column(Float, nullable=False)
  payload: Mapped[dict] = mapped_column(JSON, nullable=False)


class StoredMatch(Base):
  __tablename__ = "match_records"

  id: Mapped[int] = mapped_column(Integer, primary_key=True)
  payload: Mapped[dict] = mapped_column(JSON, nullable=False)


class PlayerMatch(Base):
  __tablename__ = "player_matches"

  player_id: Mapped[int] = mapped_column(Integer, primary_key=True)
  match_id: Mapped[int] = mapped_column(Integer, primary_key=True)


def create_db_engine(db_url: str) -> Engine:
  connect_args = {"check_same_thread": False} if db_url.startswith("sqlite") else {}
  return create_engine(db_url, pool_pre_ping=True, connect_args=connect_args)


# ----------------------------
# Store
# ----------------------------
class SqlStore:
  def __init__(self, db_url: str = DATABASE_URL, *, engine: Optional[Engine] = None):
    self.engine = engine or create_db_engine(db_url)
    self._sessions = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)
    Base.metadata.create_all(self.engine)

  async def _run(self, what: str, fn: Callable[[Session], T]) -> T:
    def work() -> T:
      with self._sessions() as session:
        result = fn(session)
        session.commit()
        return result

    try:
      return await asyncio.to_thread(work)
    except SQLAlchemyError as e:
      raise PersistenceFailure(f"{what} failed: {e}") from e

  # -------- Roster --------
  async def get_community_roster(self, community_id: str) -> Dict[str, UserRecord]:
    def fn(session: Session) -> Dict[str, UserRecord]:
      rows = session.scalars(
          select(CommunityMember).where(CommunityMember.community_id == community_id).order_by(CommunityMember.user_id)
      ).all()
      return {
        r.user_id: UserRecord(user_id=r.user_id, player_id=r.player_id, display_name=r.display_name)
        for r in rows
      }
    return await self._run("get_community_roster", fn)

  async def add_user(self, community_id: str, user: UserRecord) -> None:
    def fn(session: Session) -> None:
      session.merge(CommunityMember(
          community_id=community_id,
          user_id=user.user_id,
          player_id=user.player_id,
          display_name=user.display_name,
      ))
    await self._run("add_user", fn)

  async def remove_user(self, community_id: str, user_id: str) -> None:
    def fn(session: Session) -> None:
      session.execute(delete(CommunityMember).where(
          CommunityMember.community_id == community_id, CommunityMember.user_id == user_id,
      ))
    await self._run("remove_user", fn)

  # -------- Snapshots --------
  async def save_cache_snapshot(self, community_id: str, entries: Dict[str, UserCacheEntry], built_at: float) -> None:
    payload = {uid: e.model_dump(mode="json") for uid, e in entries.items()}

    def fn(session: Session) -> None:
      session.merge(CacheSnapshot(community_id=community_id, built_at=built_at, payload=payload))
    await self._run("save_cache_snapshot", fn)

  async def load_cache_snapshot(self, community_id: str) -> Dict[str, UserCacheEntry]:
    def fn(session: Session) -> Optional[dict]:
      row = session.get(CacheSnapshot, community_id)
      return row.payload if row else None

    payload = await self._run("load_cache_snapshot", fn)
    if not payload:
      return {}
    try:
      return {uid: UserCacheEntry.model_validate(data) for uid, data in payload.items()}
    except ValidationError as e:
      raise PersistenceFailure(f"snapshot for community {community_id} is unreadable: {e}") from e

  async def delete_cache_snapshot(self, community_id: str) -> None:
    def fn(session: Session) -> None:
      session.execute(delete(CacheSnapshot).where(CacheSnapshot.community_id == community_id))
    await self._run("delete_cache_snapshot", fn)

  async def delete_all_snapshots(self) -> None:
    def fn(session: Session) -> None:
      session.execute(delete(CacheSnapshot))
    await self._run("delete_all_snapshots", fn)

  async def list_communities_with_snapshots(self) -> List[SnapshotInfo]:
    def fn(session: Session) -> List[SnapshotInfo]:
      rows = session.execute(select(CacheSnapshot.community_id, CacheSnapshot.built_at)).all()
      return [SnapshotInfo(community_id=cid, last_built_at=built_at) for cid, built_at in rows]
    return await self._run("list_communities_with_snapshots", fn)

  # -------- Matches --------
  async def load_player_matches(self, player_id: int) -> Dict[int, MatchRecord]:
    def fn(session: Session) -> List[Any]:
      return session.scalars(
          select(StoredMatch.payload)
          .join(PlayerMatch, PlayerMatch.match_id == StoredMatch.id)
          .where(PlayerMatch.player_id == player_id)
      ).all()

    out: Dict[int, MatchRecord] = {}
    for payload in await self._run("load_player_matches", fn):
      try:
        m = MatchRecord.model_validate(payload)
      except ValidationError:
        log.warning(f"Skipping unreadable stored match for player {player_id}")
        continue
      out[m.id] = m
    return out

  async def save_matches(self, player_id: int, matches: Dict[int, MatchRecord]) -> None:
    payloads = {mid: m.model_dump(mode="json") for mid, m in matches.items()}

    def fn(session: Session) -> None:
      for mid, payload in payloads.items():
        session.merge(StoredMatch(id=mid, payload=payload))
        session.merge(PlayerMatch(player_id=player_id, match_id=mid))
    await self._run("save_matches", fn)
