# statcache/routes/leaderboard.py
from typing import List

from fastapi import APIRouter, Request

from statcache.config import LEADERBOARD_SIZE
from statcache.models import (
  CacheInfo,
  LeaderboardRow,
  QueueFilter,
  Scope,
  StatKind,
  StreakRow,
  TimeWindow,
)
from statcache.services.stat_cache import StatCache

router = APIRouter(prefix="/api", tags=["leaderboard"])


def _cache(request: Request) -> StatCache:
  return request.app.state.cache


@router.get("/leaderboard/{community_id}", response_model=List[LeaderboardRow])
async def get_leaderboard(
    request: Request,
    community_id: str,
    stat: StatKind = StatKind.RATING,
    window: TimeWindow = TimeWindow.ALL,
    scope: Scope = Scope.GLOBAL,
    queue: QueueFilter = QueueFilter.ALL,
):
  """
  Example:
    /api/leaderboard/1234?stat=win_rate&window=weekly&scope=community&queue=squads
  """
  return await _cache(request).get_leaderboard(community_id, stat, window, scope, queue, LEADERBOARD_SIZE)


@router.get("/streaks/{community_id}", response_model=List[StreakRow])
async def get_streaks(request: Request, community_id: str):
  return await _cache(request).get_streaks(community_id)


#cache admin
@router.get("/cache", response_model=List[CacheInfo])
async def all_cache_info(request: Request):
  return _cache(request).get_all_cache_info()


@router.get("/cache/{community_id}", response_model=CacheInfo)
async def cache_info(request: Request, community_id: str):
  return _cache(request).get_cache_info(community_id)


@router.post("/cache/{community_id}/refresh")
async def refresh_cache(request: Request, community_id: str):
  cache = _cache(request)
  refreshed = await cache.refresh_cache(community_id)
  return {"refreshed": refreshed, "info": cache.get_cache_info(community_id)}


@router.delete("/cache/{community_id}")
async def clear_cache(request: Request, community_id: str):
  await _cache(request).clear_cache(community_id)
  return {"cleared": community_id}


@router.delete("/cache")
async def clear_all_caches(request: Request):
  await _cache(request).clear_all_caches()
  return {"cleared": "all"}
