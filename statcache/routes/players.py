# statcache/routes/players.py
from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException, Request

from statcache.errors import UpstreamUnavailable
from statcache.models import Notables, PlayerStats, QueueFilter, Scope, TimeWindow
from statcache.services import player_stats
from statcache.services.bundles import player_summary

router = APIRouter(prefix="/api", tags=["players"])


@router.get("/players/{player_id}/notables", response_model=Notables)
async def get_notables(request: Request, player_id: int, community_id: str = ""):
  """Best/worst score, seed over/underperformance and carry/anchor across every match of one player."""
  client = request.app.state.match_client
  try:
    profile = await client.get_profile(player_id)
    if profile is None:
      raise HTTPException(404, f"Player {player_id} not found")
    matches = await client.get_all_matches(player_id, community_id)
  except UpstreamUnavailable as e:
    raise HTTPException(502, f"Match source unavailable: {e}")
  return player_stats.notables(matches, player_id)


@router.get("/players/{player_id}/stats", response_model=PlayerStats)
async def get_player_stats(
    request: Request,
    player_id: int,
    community_id: str = "",
    window: TimeWindow = TimeWindow.ALL,
    scope: Scope = Scope.GLOBAL,
    queue: QueueFilter = QueueFilter.ALL,
):
  """
  Example:
    /api/players/101/stats?community_id=1234&scope=community&queue=squads
  """
  if scope == Scope.COMMUNITY and not community_id:
    raise HTTPException(400, "scope=community needs a community_id")

  members = None
  if community_id:
    entries = await request.app.state.cache.get_entries(community_id)
    members = {e.player_id for e in entries.values()}

  client = request.app.state.match_client
  try:
    profile = await client.get_profile(player_id)
    if profile is None:
      raise HTTPException(404, f"Player {player_id} not found")
    matches = await client.get_all_matches(player_id, community_id)
  except UpstreamUnavailable as e:
    raise HTTPException(502, f"Match source unavailable: {e}")

  return player_summary(
      matches,
      player_id,
      members=members,
      window=window,
      scope=scope,
      queue=queue,
      now=datetime.now(timezone.utc),
      name=profile.name,
  )


@router.get("/h2h")
async def head_to_head(request: Request, player_a: int, player_b: int, community_id: str = ""):
  """
  Example:
    /api/h2h?player_a=101&player_b=202
  """
  if player_a == player_b:
    raise HTTPException(400, "player_a and player_b must differ")

  client = request.app.state.match_client
  try:
    matches = await client.get_all_matches(player_a, community_id)
  except UpstreamUnavailable as e:
    raise HTTPException(502, f"Match source unavailable: {e}")

  record = player_stats.head_to_head(matches, player_a, player_b)
  biggest = player_stats.biggest_difference(matches, player_a, player_b)
  return {
    "playerA": player_a,
    "playerB": player_b,
    "record": record.model_dump(),
    "biggestWin": biggest.model_dump() if biggest else None,
  }
