# statcache/services/bundles.py
from datetime import datetime, timedelta
from typing import Collection, Dict, Optional

from statcache.config import CURRENT_SEASON, SQUAD_TIER
from statcache.models import BundleTree, MatchRecord, PlayerStats, QueueFilter, Scope, StatBundle, TimeWindow
from statcache.services import player_stats
from statcache.services.player_stats import Matches

WEEK = timedelta(days=7)


# ----------------------------
# Match filters
# ----------------------------
def filter_by_week(matches: Matches, now: datetime) -> Matches:
  since = now - WEEK
  return {mid: m for mid, m in matches.items() if m.timestamp is not None and m.timestamp >= since}


def filter_by_season(matches: Matches, season: int = CURRENT_SEASON) -> Matches:
  return {mid: m for mid, m in matches.items() if m.season == season}


def filter_by_window(matches: Matches, window: TimeWindow, now: datetime, season: int = CURRENT_SEASON) -> Matches:
  if window == TimeWindow.WEEKLY:
    return filter_by_week(matches, now)
  if window == TimeWindow.SEASON:
    return filter_by_season(matches, season)
  return matches


def filter_by_queue(matches: Matches, queue: QueueFilter) -> Matches:
  if queue == QueueFilter.SQUADS:
    return {mid: m for mid, m in matches.items() if m.tier == SQUAD_TIER}
  if queue == QueueFilter.SOLO:
    return {mid: m for mid, m in matches.items() if m.tier != SQUAD_TIER}
  return matches


def _is_community_match(match: MatchRecord, player_id: int, members: Collection[int]) -> bool:
  for p in player_stats.players_from_match(match):
    if p.player_id != player_id and p.player_id in members:
      return True
  return False


def filter_by_scope(matches: Matches, scope: Scope, player_id: int, members: Collection[int]) -> Matches:
  """COMMUNITY keeps matches shared with at least one other roster member."""
  if scope == Scope.GLOBAL:
    return matches
  return {mid: m for mid, m in matches.items() if _is_community_match(m, player_id, members)}


# ----------------------------
# Bundles
# ----------------------------
def basic_stats(matches: Matches, player_id: int) -> StatBundle:
  best = player_stats.best_score(matches, player_id)
  return StatBundle(
      win_rate=player_stats.win_rate(matches, player_id),
      average_score=player_stats.average_score(matches, player_id),
      best_score=best.score if best else None,
      events_played=player_stats.matches_played(matches, player_id),
  )


def build_bundles(
    matches: Optional[Matches],
    player_id: int,
    members: Collection[int],
    now: datetime,
    season: int = CURRENT_SEASON,
) -> BundleTree:
  """Every (window x scope x queue) bundle for one player."""
  matches = matches or {}
  members = frozenset(members)
  tree: BundleTree = {}
  for window in TimeWindow:
    in_window = filter_by_window(matches, window, now, season)
    tree[window] = {}
    for scope in Scope:
      in_scope = filter_by_scope(in_window, scope, player_id, members)
      tree[window][scope] = {
        queue: basic_stats(filter_by_queue(in_scope, queue), player_id)
        for queue in QueueFilter
      }
  return tree


def player_summary(
    matches: Optional[Matches],
    player_id: int,
    *,
    members: Optional[Collection[int]] = None,
    window: TimeWindow = TimeWindow.ALL,
    scope: Scope = Scope.GLOBAL,
    queue: QueueFilter = QueueFilter.ALL,
    now: datetime,
    season: int = CURRENT_SEASON,
    name: str = "",
) -> PlayerStats:
  """
  Full stat line for one player over the matches left after the window, scope
  and queue filters. Head-to-head against community members is only filled in
  when `members` is given.
  """
  selected = filter_by_window(matches or {}, window, now, season)
  selected = filter_by_scope(selected, scope, player_id, frozenset(members or ()))
  selected = filter_by_queue(selected, queue)

  h2h = None
  if members is not None:
    h2h = player_stats.total_head_to_head(selected, player_id, members)

  return PlayerStats(
      player_id=player_id,
      name=name,
      window=window,
      scope=scope,
      queue=queue,
      events_played=player_stats.matches_played(selected, player_id),
      win_rate=player_stats.win_rate(selected, player_id),
      average_score=player_stats.average_score(selected, player_id),
      best_score=player_stats.best_score(selected, player_id),
      worst_score=player_stats.worst_score(selected, player_id),
      average_seed=player_stats.average_seed(selected, player_id),
      average_placement=player_stats.average_placement(selected, player_id),
      community_head_to_head=h2h,
  )
