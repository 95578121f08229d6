# statcache/services/stat_cache.py
"""
Per-community cache of precomputed stat bundles.

A community moves through absent -> building -> fresh -> stale ->
refreshing -> fresh. Readers get whatever is in memory; only a community
that was never built makes the caller wait. At most one rebuild per
community is in flight; the task registered in `_refreshing` is the flag.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Collection, Dict, List, Optional, Set

from statcache.config import (
  CACHE_TTL_SECONDS,
  CURRENT_SEASON,
  LEADERBOARD_SIZE,
  REBUILD_BATCH_DELAY_SECONDS,
  REBUILD_BATCH_SIZE,
  REFRESH_AHEAD_SECONDS,
  SCAN_INTERVAL_SECONDS,
)
from statcache.match_client import MatchSource
from statcache.models import (
  CacheInfo,
  LeaderboardRow,
  QueueFilter,
  Scope,
  StatKind,
  StreakRow,
  TimeWindow,
  UserCacheEntry,
  UserRecord,
)
from statcache.services.bundles import build_bundles, filter_by_season
from statcache.services.leaderboard import rank_entries, rank_streaks
from statcache.services.player_stats import win_streaks
from statcache.store import SnapshotStore

# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------
log = logging.getLogger("stat_cache")
if not log.handlers:
  h = logging.StreamHandler()
  h.setFormatter(logging.Formatter("[CACHE] %(levelname)s: %(message)s"))
  log.addHandler(h)
  log.setLevel(logging.INFO)


@dataclass
class CommunityCache:
  users: Dict[str, UserCacheEntry]
  built_at: Optional[float]  # epoch seconds; None once invalidated


class StatCache:
  def __init__(
      self,
      client: MatchSource,
      store: SnapshotStore,
      *,
      ttl: float = CACHE_TTL_SECONDS,
      refresh_ahead: float = REFRESH_AHEAD_SECONDS,
      scan_interval: float = SCAN_INTERVAL_SECONDS,
      batch_size: int = REBUILD_BATCH_SIZE,
      batch_delay: float = REBUILD_BATCH_DELAY_SECONDS,
      season: int = CURRENT_SEASON,
      clock: Callable[[], float] = time.time,
  ):
    if batch_size <= 0:
      raise ValueError("batch_size must be greater than 0")
    self._client = client
    self._store = store
    self.ttl = ttl
    self.refresh_ahead = refresh_ahead
    self.scan_interval = scan_interval
    self.batch_size = batch_size
    self.batch_delay = batch_delay
    self.season = season
    self._clock = clock

    self._communities: Dict[str, CommunityCache] = {}
    self._refreshing: Dict[str, asyncio.Task] = {}
    # bumped by clear_*; a rebuild that started under an older value is discarded
    self._generations: Dict[str, int] = {}
    self._pending_writes: Dict[str, Set[asyncio.Task]] = {}
    self._scheduler: Optional[asyncio.Task] = None

  # ----------------------------
  # State
  # ----------------------------
  def is_stale(self, community_id: str) -> bool:
    cache = self._communities.get(community_id)
    if cache is None or cache.built_at is None:
      return True
    return self._clock() - cache.built_at > self.ttl

  def is_refreshing(self, community_id: str) -> bool:
    return community_id in self._refreshing

  def cached_community_ids(self) -> List[str]:
    return list(self._communities.keys())

  def get_cache_info(self, community_id: str) -> CacheInfo:
    cache = self._communities.get(community_id)
    built_at = cache.built_at if cache else None
    return CacheInfo(
        community_id=community_id,
        last_built_at=datetime.fromtimestamp(built_at, timezone.utc) if built_at is not None else None,
        user_count=len(cache.users) if cache else 0,
        is_stale=self.is_stale(community_id),
        refreshing=self.is_refreshing(community_id),
    )

  def get_all_cache_info(self) -> List[CacheInfo]:
    return [self.get_cache_info(cid) for cid in self._communities]

  # ----------------------------
  # Reads
  # ----------------------------
  async def get_entries(self, community_id: str) -> Dict[str, UserCacheEntry]:
    cache = self._communities.get(community_id)
    if cache is None:
      log.info(f"No cache for community {community_id}, building it now")
      await asyncio.shield(self._start_refresh(community_id, "initial build"))
      cache = self._communities.get(community_id)
      return cache.users if cache else {}

    if self.is_stale(community_id):
      self._start_refresh(community_id, "stale")
    return cache.users

  async def get_leaderboard(
      self,
      community_id: str,
      stat: StatKind,
      window: TimeWindow = TimeWindow.ALL,
      scope: Scope = Scope.GLOBAL,
      queue: QueueFilter = QueueFilter.ALL,
      limit: int = LEADERBOARD_SIZE,
  ) -> List[LeaderboardRow]:
    entries = await self.get_entries(community_id)
    return rank_entries(entries.values(), stat, window, scope, queue, limit)

  async def get_streaks(self, community_id: str, limit: int = LEADERBOARD_SIZE) -> List[StreakRow]:
    entries = await self.get_entries(community_id)
    return rank_streaks(entries.values(), limit)

  # ----------------------------
  # Writes
  # ----------------------------
  async def refresh_cache(self, community_id: str) -> bool:
    """
    Rebuild now regardless of age. False if a rebuild was already running or it
    failed; a failed rebuild leaves the previous entries and build time in place.
    """
    if community_id in self._refreshing:
      log.debug(f"Refresh for community {community_id} suppressed: rebuild already in flight")
      return False
    return await self._start_refresh(community_id, "manual refresh")

  async def refresh_all_caches(self) -> int:
    community_ids = set(self._communities)
    try:
      community_ids |= {info.community_id for info in await self._store.list_communities_with_snapshots()}
    except Exception:
      log.error("Failed to list stored snapshots; refreshing in-memory communities only", exc_info=True)

    log.info(f"Force refreshing caches for {len(community_ids)} communities")
    refreshed = 0
    for community_id in sorted(community_ids):
      if await self.refresh_cache(community_id):
        refreshed += 1
    return refreshed

  async def clear_cache(self, community_id: str) -> None:
    self._communities.pop(community_id, None)
    self._discard_inflight(community_id)
    await self._settle_writes(community_id)
    try:
      await self._store.delete_cache_snapshot(community_id)
    except Exception:
      log.error(f"Failed to delete stored snapshot for community {community_id}", exc_info=True)
    log.info(f"Cache cleared for community {community_id}")

  async def clear_all_caches(self) -> None:
    community_ids = set(self._communities) | set(self._refreshing)
    count = len(self._communities)
    self._communities.clear()
    for community_id in community_ids | set(self._pending_writes):
      self._discard_inflight(community_id)
    await self._settle_writes()
    try:
      await self._store.delete_all_snapshots()
    except Exception:
      log.error("Failed to delete stored snapshots", exc_info=True)
    log.info(f"All caches cleared ({count} communities)")

  def _discard_inflight(self, community_id: str) -> None:
    self._generations[community_id] = self._generations.get(community_id, 0) + 1

  async def _settle_writes(self, community_id: Optional[str] = None) -> None:
    """Wait out snapshot writes already in progress so a delete lands after them."""
    if community_id is None:
      tasks = [t for writes in self._pending_writes.values() for t in writes]
    else:
      tasks = list(self._pending_writes.get(community_id, ()))
    if tasks:
      await asyncio.gather(*tasks, return_exceptions=True)

  # ----------------------------
  # Rebuild
  # ----------------------------
  def _start_refresh(self, community_id: str, reason: str) -> asyncio.Task:
    task = self._refreshing.get(community_id)
    if task is not None:
      log.debug(f"Rebuild for community {community_id} already in flight ({reason})")
      return task

    log.info(f"Starting rebuild for community {community_id} ({reason})")
    task = asyncio.create_task(self._rebuild(community_id), name=f"rebuild:{community_id}")
    self._refreshing[community_id] = task
    task.add_done_callback(lambda t: self._refresh_done(community_id, t))
    return task

  def _refresh_done(self, community_id: str, task: asyncio.Task) -> None:
    if self._refreshing.get(community_id) is task:
      del self._refreshing[community_id]

  async def _rebuild(self, community_id: str) -> bool:
    generation = self._generations.get(community_id, 0)
    started = self._clock()
    try:
      roster = await self._store.get_community_roster(community_id)
      users = await self._build_users(community_id, roster)
    except Exception:
      log.error(f"Rebuild failed for community {community_id}", exc_info=True)
      return False

    if self._generations.get(community_id, 0) != generation:
      log.info(f"Discarding rebuild for community {community_id}: cleared while it ran")
      return False

    built_at = self._clock()
    self._communities[community_id] = CommunityCache(users=users, built_at=built_at)
    log.info(f"Cache updated for community {community_id} with {len(users)} users in {built_at - started:.1f}s")
    self._persist_later(community_id, users, built_at)
    return True

  async def _build_users(self, community_id: str, roster: Dict[str, UserRecord]) -> Dict[str, UserCacheEntry]:
    members = {u.player_id for u in roster.values()}
    now = datetime.fromtimestamp(self._clock(), timezone.utc)
    records = list(roster.values())
    log.info(f"Processing {len(records)} users for community {community_id}")

    users: Dict[str, UserCacheEntry] = {}
    for i in range(0, len(records), self.batch_size):
      batch = records[i:i + self.batch_size]
      results = await asyncio.gather(*[
        self._compute_user_safe(community_id, user, members, now) for user in batch
      ])
      for user, entry in zip(batch, results):
        if entry is not None:
          users[user.user_id] = entry

      # pace bursts against the rate-limited upstream
      if i + self.batch_size < len(records):
        await asyncio.sleep(self.batch_delay)
    return users

  async def _compute_user_safe(
      self, community_id: str, user: UserRecord, members: Collection[int], now: datetime,
  ) -> Optional[UserCacheEntry]:
    try:
      return await self._compute_user(community_id, user, members, now)
    except Exception as e:
      log.warning(f"Skipping user {user.user_id} (player {user.player_id}) in community {community_id}: {e}")
      return None

  async def _compute_user(
      self, community_id: str, user: UserRecord, members: Collection[int], now: datetime,
  ) -> Optional[UserCacheEntry]:
    profile = await self._client.get_profile(user.player_id)
    if profile is None:
      log.info(f"No profile for player {user.player_id}; leaving user {user.user_id} out")
      return None

    matches = await self._client.get_all_matches(user.player_id, community_id)
    current = await self._client.get_current_rating(user.player_id)
    weekly = await self._client.get_rating_delta(user.player_id, TimeWindow.WEEKLY, now)
    seasonal = await self._client.get_rating_delta(user.player_id, TimeWindow.SEASON, now)

    return UserCacheEntry(
        user_id=user.user_id,
        player_id=user.player_id,
        display_name=profile.name or user.display_name or f"User {user.user_id}",
        current_rating=current,
        weekly_rating_delta=weekly,
        seasonal_rating_delta=seasonal,
        bundles=build_bundles(matches, user.player_id, members, now, self.season),
        streak=win_streaks(filter_by_season(matches, self.season), user.player_id),
    )

  # ----------------------------
  # Persistence
  # ----------------------------
  def _persist_later(self, community_id: str, users: Dict[str, UserCacheEntry], built_at: float) -> None:
    generation = self._generations.get(community_id, 0)
    task = asyncio.create_task(self._persist(community_id, users, built_at, generation))
    writes = self._pending_writes.setdefault(community_id, set())
    writes.add(task)
    task.add_done_callback(lambda t: self._write_done(community_id, t))

  def _write_done(self, community_id: str, task: asyncio.Task) -> None:
    writes = self._pending_writes.get(community_id)
    if writes is None:
      return
    writes.discard(task)
    if not writes:
      del self._pending_writes[community_id]

  async def _persist(
      self, community_id: str, users: Dict[str, UserCacheEntry], built_at: float, generation: int,
  ) -> None:
    if self._generations.get(community_id, 0) != generation:
      log.info(f"Skipping snapshot for community {community_id}: cleared before it was written")
      return
    try:
      await self._store.save_cache_snapshot(community_id, users, built_at)
      log.info(f"Snapshot saved for community {community_id} ({len(users)} users)")
    except Exception:
      log.error(f"Failed to save snapshot for community {community_id}", exc_info=True)

  async def hydrate(self) -> int:
    """Load stored snapshots with their original build times; old ones come back stale."""
    try:
      infos = await self._store.list_communities_with_snapshots()
    except Exception:
      log.error("Failed to list stored snapshots", exc_info=True)
      return 0

    loaded = 0
    for info in infos:
      try:
        users = await self._store.load_cache_snapshot(info.community_id)
      except Exception:
        log.error(f"Failed to load snapshot for community {info.community_id}", exc_info=True)
        continue
      if not users or info.community_id in self._communities:
        continue
      self._communities[info.community_id] = CommunityCache(users=users, built_at=info.last_built_at)
      loaded += 1
      log.info(f"Loaded snapshot for community {info.community_id} ({len(users)} users)")

    log.info(f"Hydrated {loaded} of {len(infos)} stored communities")
    return loaded

  # ----------------------------
  # Scheduler
  # ----------------------------
  def refresh_ahead_scan(self) -> List[str]:
    """Start background rebuilds for entries older than the refresh-ahead threshold."""
    started: List[str] = []
    now = self._clock()
    for community_id, cache in list(self._communities.items()):
      if community_id in self._refreshing:
        continue
      if cache.built_at is not None and now - cache.built_at <= self.refresh_ahead:
        continue
      self._start_refresh(community_id, "refresh-ahead")
      started.append(community_id)
    return started

  async def _scheduler_loop(self) -> None:
    while True:
      await asyncio.sleep(self.scan_interval)
      try:
        self.refresh_ahead_scan()
      except Exception:
        log.error("Refresh-ahead scan failed", exc_info=True)

  def start(self) -> None:
    if self._scheduler is None or self._scheduler.done():
      self._scheduler = asyncio.create_task(self._scheduler_loop(), name="stat-cache-scheduler")

  async def stop(self) -> None:
    if self._scheduler is not None:
      self._scheduler.cancel()
      await asyncio.gather(self._scheduler, return_exceptions=True)
      self._scheduler = None
    for task in list(self._refreshing.values()):
      task.cancel()
    await self.drain()

  async def drain(self) -> None:
    """Wait for in-flight rebuilds and snapshot writes."""
    while self._refreshing or self._pending_writes:
      writes = [t for tasks in self._pending_writes.values() for t in tasks]
      await asyncio.gather(*self._refreshing.values(), *writes, return_exceptions=True)
