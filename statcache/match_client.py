# statcache/match_client.py
import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol, Tuple

import httpx
from pydantic import ValidationError

from statcache.config import (
  CURRENT_SEASON,
  DEFAULT_GAME,
  MATCH_FETCH_CHUNK,
  MATCH_SOURCE_API_KEY,
  MATCH_SOURCE_BASE_URL,
  RATE_CAPACITY,
  RATE_PER_SEC,
  game_modes_for_season,
)
from statcache.errors import UpstreamUnavailable
from statcache.models import MatchRecord, Profile, TimeWindow

log = logging.getLogger("match_client")

WEEK = timedelta(days=7)


class MatchSource(Protocol):
  async def get_profile(self, player_id: int) -> Optional[Profile]: ...

  async def get_all_matches(self, player_id: int, community_id: str) -> Dict[int, MatchRecord]: ...

  async def get_current_rating(self, player_id: int) -> Optional[float]: ...

  async def get_rating_delta(
      self, player_id: int, window: TimeWindow, now: Optional[datetime] = None,
  ) -> Optional[float]: ...


class MatchStore(Protocol):
  async def load_player_matches(self, player_id: int) -> Dict[int, MatchRecord]: ...

  async def save_matches(self, player_id: int, matches: Dict[int, MatchRecord]) -> None: ...


# ----------------------------
# Pacing
# ----------------------------
class _TokenBucket:
  """Refills `rate_per_sec` tokens a second up to `capacity`; each request spends one."""

  def __init__(self, rate_per_sec: float, capacity: int):
    if rate_per_sec <= 0:
      raise ValueError("rate_per_sec must be greater than 0")
    self.rate = rate_per_sec
    self.capacity = float(capacity)
    self._tokens = float(capacity)
    self._last = time.monotonic()
    self._lock = asyncio.Lock()

  def _refill(self) -> None:
    now = time.monotonic()
    self._tokens = min(self.capacity, self._tokens + (now - self._last) * self.rate)
    self._last = now

  async def take(self) -> None:
    async with self._lock:
      self._refill()
      if self._tokens < 1.0:
        # holding the lock keeps waiters in arrival order
        await asyncio.sleep((1.0 - self._tokens) / self.rate)
        self._refill()
      self._tokens -= 1.0


# ----------------------------
# Response cache with shared in-flight requests
# ----------------------------
class _ResponseCache:
  def __init__(self):
    self._entries: Dict[str, Tuple[float, Any]] = {}
    self._pending: Dict[str, asyncio.Future] = {}

  def lookup(self, key: str) -> Any:
    hit = self._entries.get(key)
    if hit is None:
      return None
    expires, payload = hit
    if time.monotonic() >= expires:
      del self._entries[key]
      return None
    return payload

  def store(self, key: str, payload: Any, ttl: float) -> None:
    self._entries[key] = (time.monotonic() + ttl, payload)

  def pending(self, key: str) -> Optional[asyncio.Future]:
    return self._pending.get(key)

  def begin(self, key: str) -> None:
    self._pending[key] = asyncio.get_running_loop().create_future()

  def finish(self, key: str, value: Any = None, error: Optional[BaseException] = None) -> None:
    fut = self._pending.pop(key, None)
    if fut is None or fut.done():
      return
    if isinstance(error, asyncio.CancelledError):
      fut.cancel()
    elif error is not None:
      fut.set_exception(error)
      fut.exception()  # mark retrieved when nobody is waiting
    else:
      fut.set_result(value)


class MatchSourceClient:
  """
  Client for the lounge-style match source: /player, /player/details, /table.
  Pacing, response caching and retries are per instance.
  """

  def __init__(
      self,
      base_url: str = MATCH_SOURCE_BASE_URL,
      *,
      store: Optional[MatchStore] = None,
      season: int = CURRENT_SEASON,
      game: str = DEFAULT_GAME,
      api_key: Optional[str] = MATCH_SOURCE_API_KEY,
      rate_per_sec: float = RATE_PER_SEC,
      capacity: int = RATE_CAPACITY,
      transport: Optional[httpx.AsyncBaseTransport] = None,
      max_attempts: int = 3,
  ):
    self.base_url = base_url.rstrip("/")
    self.store = store
    self.season = season
    self.game = game
    self.api_key = api_key
    self.max_attempts = max_attempts
    self._transport = transport
    self._bucket = _TokenBucket(rate_per_sec=rate_per_sec, capacity=capacity)
    self._cache = _ResponseCache()
    self._client: Optional[httpx.AsyncClient] = None

  async def __aenter__(self):
    limits = httpx.Limits(max_keepalive_connections=10, max_connections=20)
    headers = {"Content-Type": "application/json"}
    if self.api_key:
      headers["Authorization"] = f"Bearer {self.api_key}"
    self._client = httpx.AsyncClient(
        base_url=self.base_url,
        headers=headers,
        timeout=httpx.Timeout(15.0, connect=5.0),
        limits=limits,
        transport=self._transport,
    )
    return self

  async def __aexit__(self, *exc):
    if self._client:
      await self._client.aclose()
      self._client = None

  async def _get(self, path: str, *, params: dict | None = None, cache_key: str | None = None, ttl: int = 0) -> Any:
    """Paced GET; concurrent callers with the same cache_key share one request. 404 gives None."""
    if self._client is None:
      raise RuntimeError("MatchSourceClient must be used as an async context manager")

    if cache_key:
      hit = self._cache.lookup(cache_key)
      if hit is not None:
        return hit
      pending = self._cache.pending(cache_key)
      if pending is not None:
        return await pending
      self._cache.begin(cache_key)

    try:
      data = await self._fetch(path, params)
    except BaseException as e:
      if cache_key:
        self._cache.finish(cache_key, error=e)
      raise

    if cache_key and ttl > 0 and data is not None:
      self._cache.store(cache_key, data, ttl)
    if cache_key:
      self._cache.finish(cache_key, value=data)
    return data

  async def _fetch(self, path: str, params: dict | None) -> Any:
    params = {k: v for k, v in (params or {}).items() if v is not None}
    attempts = 0
    while True:
      attempts += 1
      await self._bucket.take()
      try:
        r = await self._client.get(path, params=params)
      except httpx.HTTPError as e:
        if attempts < self.max_attempts:
          log.warning(f"Request to {path} failed (attempt {attempts}/{self.max_attempts}): {e}")
          await asyncio.sleep(0.5 * attempts)
          continue
        raise UpstreamUnavailable(f"{path}: {e}") from e

      if r.status_code == 404:
        return None
      if r.status_code == 429 and attempts < self.max_attempts:
        retry = int(r.headers.get("Retry-After", "2"))
        await asyncio.sleep(max(1, retry))
        continue
      if r.status_code >= 500 and attempts < self.max_attempts:
        await asyncio.sleep(0.5 * attempts)
        continue
      if r.status_code >= 400:
        raise UpstreamUnavailable(f"{path}: HTTP {r.status_code}", status_code=r.status_code)
      return r.json()

  # -------- Players --------
  async def get_profile(self, player_id: int) -> Optional[Profile]:
    data = await self._get(
        "/player",
        params={"id": player_id, "season": self.season, "game": self.game},
        cache_key=f"player:{player_id}:{self.season}:{self.game}",
        ttl=300,
    )
    if not data:
      return None
    return Profile.model_validate(data)

  async def get_player_details(self, player_id: int, season: int, game: str) -> Optional[dict]:
    return await self._get(
        "/player/details",
        params={"id": player_id, "season": season, "game": game},
        cache_key=f"details:{player_id}:{season}:{game}",
        ttl=300,
    )

  async def get_current_rating(self, player_id: int) -> Optional[float]:
    profile = await self.get_profile(player_id)
    if profile is None:
      return None
    return profile.mmr

  async def get_rating_delta(
      self, player_id: int, window: TimeWindow, now: Optional[datetime] = None,
  ) -> Optional[float]:
    """Sum of current-season rating changes (the 7 days before `now` for WEEKLY). None when there are none."""
    until = now or datetime.now(timezone.utc)
    since = until - WEEK if window == TimeWindow.WEEKLY else None
    total = 0.0
    found = False
    for game in game_modes_for_season(self.season):
      details = await self.get_player_details(player_id, self.season, game)
      for change in (details or {}).get("mmrChanges") or []:
        delta = change.get("mmrDelta")
        if delta is None:
          continue
        if since is not None and not since <= _parse_time(change.get("time")) <= until:
          continue
        total += delta
        found = True
    return total if found else None

  # -------- Matches --------
  async def get_match(self, match_id: int) -> Optional[MatchRecord]:
    data = await self._get("/table", params={"tableId": match_id}, cache_key=f"table:{match_id}", ttl=3600)
    if not data:
      return None
    try:
      return MatchRecord.model_validate(data)
    except ValidationError as e:
      log.warning(f"Skipping malformed match {match_id}: {e.error_count()} validation errors")
      return None

  async def get_all_matches(self, player_id: int, community_id: str) -> Dict[int, MatchRecord]:
    """
    Every match the player appears in: stored records first, then any table
    referenced by rating changes in any season up to the current one.
    """
    matches: Dict[int, MatchRecord] = {}
    if self.store is not None:
      try:
        matches.update(await self.store.load_player_matches(player_id))
      except Exception as e:
        log.warning(f"Could not load stored matches for player {player_id}: {e}")

    fetched: Dict[int, MatchRecord] = {}
    for season in range(0, self.season + 1):
      for game in game_modes_for_season(season):
        try:
          details = await self.get_player_details(player_id, season, game)
        except UpstreamUnavailable as e:
          # a mode the player never played can fail; other seasons still count
          log.debug(f"No details for player {player_id} season {season} {game}: {e}")
          continue
        wanted = _table_ids(details, exclude=matches.keys() | fetched.keys())
        fetched.update(await self._fetch_tables(wanted))

    if fetched:
      matches.update(fetched)
      if self.store is not None:
        try:
          await self.store.save_matches(player_id, fetched)
        except Exception as e:
          log.warning(f"Failed to persist {len(fetched)} matches for player {player_id}: {e}")

    log.debug(f"Player {player_id} (community {community_id}): {len(matches)} matches, {len(fetched)} new")
    return matches

  async def _fetch_tables(self, table_ids: List[int]) -> Dict[int, MatchRecord]:
    out: Dict[int, MatchRecord] = {}
    for i in range(0, len(table_ids), MATCH_FETCH_CHUNK):
      chunk = table_ids[i:i + MATCH_FETCH_CHUNK]
      results = await asyncio.gather(*[self.get_match(tid) for tid in chunk], return_exceptions=True)
      for tid, m in zip(chunk, results):
        if isinstance(m, Exception):
          log.warning(f"Could not fetch table {tid}: {m}")
          continue
        if m is not None:
          out[tid] = m
    return out


def _table_ids(details: Optional[dict], exclude) -> List[int]:
  out: List[int] = []
  for change in (details or {}).get("mmrChanges") or []:
    if change.get("reason") != "Table" or change.get("changeId") is None:
      continue
    tid = int(change["changeId"])
    if tid not in exclude and tid not in out:
      out.append(tid)
  return out


def _parse_time(value: Optional[str]) -> datetime:
  if not value:
    return datetime.min.replace(tzinfo=timezone.utc)
  parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
  if parsed.tzinfo is None:
    parsed = parsed.replace(tzinfo=timezone.utc)
  return parsed
