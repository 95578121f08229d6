# statcache/services/player_stats.py
"""
Pure stat functions over a {match_id: MatchRecord} map and a player id.
Nothing here does I/O; every function is total on empty input.
"""
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from statcache.models import (
  HeadToHead,
  MatchRecord,
  Notables,
  PerformanceHighlight,
  RivalryHighlight,
  ScoreHighlight,
  StreakSummary,
)

Matches = Dict[int, MatchRecord]


@dataclass(frozen=True)
class PlacedResult:
  player_id: int
  player_name: str
  score: float
  rating_delta: Optional[float]
  previous_rating: Optional[float]
  team_index: int
  team_rank: Optional[int]


@dataclass(frozen=True)
class RankedResult:
  player: PlacedResult
  rank: int
  tied: bool

  @property
  def player_id(self) -> int:
    return self.player.player_id

  @property
  def score(self) -> float:
    return self.player.score


@dataclass(frozen=True)
class SeededResult:
  player: PlacedResult
  seed: int


# ----------------------------
# Per-match helpers
# ----------------------------
def players_from_match(match: Optional[MatchRecord]) -> List[PlacedResult]:
  """Flatten every team's scores; entries without a score are dropped."""
  if match is None or not match.teams:
    return []
  out: List[PlacedResult] = []
  for team_index, team in enumerate(match.teams, start=1):
    for p in team.scores or []:
      if p.score is None:
        continue
      out.append(PlacedResult(
          player_id=p.player_id,
          player_name=p.player_name,
          score=p.score,
          rating_delta=p.rating_delta,
          previous_rating=p.previous_rating,
          team_index=team_index,
          team_rank=team.rank,
      ))
  return out


def individual_rankings(match: Optional[MatchRecord]) -> List[RankedResult]:
  """
  Standard competition ranking by score: equal scores share a rank and the
  next distinct score takes its 1-based position (1, 1, 3 ...).
  """
  players = sorted(players_from_match(match), key=lambda p: p.score, reverse=True)
  counts = Counter(p.score for p in players)

  ranked: List[RankedResult] = []
  rank = 1
  previous: Optional[float] = None
  for index, p in enumerate(players):
    if previous is not None and p.score < previous:
      rank = index + 1
    previous = p.score
    ranked.append(RankedResult(player=p, rank=rank, tied=counts[p.score] > 1))
  return ranked


def individual_seeds(match: Optional[MatchRecord]) -> List[SeededResult]:
  # stable sort: equal ratings keep listing order, missing ratings go last
  players = sorted(
      players_from_match(match),
      key=lambda p: (p.previous_rating is None, -(p.previous_rating or 0.0)),
  )
  return [SeededResult(player=p, seed=i) for i, p in enumerate(players, start=1)]


def player_ranking(match: Optional[MatchRecord], player_id: int) -> Optional[RankedResult]:
  return next((r for r in individual_rankings(match) if r.player_id == player_id), None)


def player_seed(match: Optional[MatchRecord], player_id: int) -> Optional[SeededResult]:
  return next((s for s in individual_seeds(match) if s.player.player_id == player_id), None)


def _player_entries(matches: Optional[Matches], player_id: int) -> Iterator[Tuple[int, MatchRecord, PlacedResult]]:
  """Yield (match_id, match, entry) once per match containing the player."""
  for match_id, match in (matches or {}).items():
    you = next((p for p in players_from_match(match) if p.player_id == player_id), None)
    if you is not None:
      yield match_id, match, you


def _mean(values: List[float]) -> float:
  if not values:
    return -1
  return sum(values) / len(values)


# ----------------------------
# Aggregates
# ----------------------------
def matches_played(matches: Optional[Matches], player_id: int) -> int:
  return sum(1 for _ in _player_entries(matches, player_id))


def win_rate(matches: Optional[Matches], player_id: int) -> float:
  """wins / (wins + losses) by rating delta sign; zero deltas count as neither. -1 without decisions."""
  wins = 0
  losses = 0
  for _, _, you in _player_entries(matches, player_id):
    delta = you.rating_delta or 0
    if delta > 0:
      wins += 1
    elif delta < 0:
      losses += 1
  if wins + losses == 0:
    return -1
  return wins / (wins + losses)


def average_score(matches: Optional[Matches], player_id: int) -> float:
  return _mean([you.score for _, _, you in _player_entries(matches, player_id)])


def average_placement(matches: Optional[Matches], player_id: int) -> float:
  placements = []
  for _, match, _ in _player_entries(matches, player_id):
    ranking = player_ranking(match, player_id)
    if ranking:
      placements.append(ranking.rank)
  return _mean(placements)


def average_seed(matches: Optional[Matches], player_id: int) -> float:
  seeds = []
  for _, match, _ in _player_entries(matches, player_id):
    seed = player_seed(match, player_id)
    if seed:
      seeds.append(seed.seed)
  return _mean(seeds)


def _score_extreme(matches: Optional[Matches], player_id: int, *, highest: bool) -> Optional[ScoreHighlight]:
  best: Optional[ScoreHighlight] = None
  for match_id, match, you in _player_entries(matches, player_id):
    if best is not None:
      if highest and you.score <= best.score:
        continue
      if not highest and you.score >= best.score:
        continue
    ranking = player_ranking(match, player_id)
    best = ScoreHighlight(
        score=you.score,
        placement=ranking.rank if ranking else None,
        match_id=match_id,
    )
  return best


def best_score(matches: Optional[Matches], player_id: int) -> Optional[ScoreHighlight]:
  return _score_extreme(matches, player_id, highest=True)


def worst_score(matches: Optional[Matches], player_id: int) -> Optional[ScoreHighlight]:
  return _score_extreme(matches, player_id, highest=False)


# ----------------------------
# Per-match extremes (seed vs rank, teammates)
# ----------------------------
def _performances(matches: Optional[Matches], player_id: int) -> Iterator[PerformanceHighlight]:
  for match_id, match, _ in _player_entries(matches, player_id):
    ranking = player_ranking(match, player_id)
    seed = player_seed(match, player_id)
    if ranking is None or seed is None:
      continue
    yield PerformanceHighlight(
        match_id=match_id,
        score=ranking.score,
        placement=ranking.rank,
        amount=seed.seed - ranking.rank,
    )


def _teammate_gaps(matches: Optional[Matches], player_id: int) -> Iterator[PerformanceHighlight]:
  for match_id, match, you in _player_entries(matches, player_id):
    rankings = individual_rankings(match)
    mine = next((r for r in rankings if r.player_id == player_id), None)
    if mine is None:
      continue
    mates = [r for r in rankings if r.player_id != player_id and r.player.team_index == you.team_index]
    if not mates:
      continue  # solo format
    mates_avg = sum(r.score for r in mates) / len(mates)
    yield PerformanceHighlight(
        match_id=match_id,
        score=mine.score,
        placement=mine.rank,
        amount=mine.score - mates_avg,
    )


def _pick_max(rows: Iterator[PerformanceHighlight]) -> Optional[PerformanceHighlight]:
  best = None
  for row in rows:
    if best is None or row.amount > best.amount or (row.amount == best.amount and row.score > best.score):
      best = row
  return best


def _pick_min(rows: Iterator[PerformanceHighlight]) -> Optional[PerformanceHighlight]:
  worst = None
  for row in rows:
    if worst is None or row.amount < worst.amount or (row.amount == worst.amount and row.score < worst.score):
      worst = row
  return worst


def biggest_overperformance(matches: Optional[Matches], player_id: int) -> Optional[PerformanceHighlight]:
  """Largest seed - rank; ties go to the higher score."""
  return _pick_max(_performances(matches, player_id))


def biggest_underperformance(matches: Optional[Matches], player_id: int) -> Optional[PerformanceHighlight]:
  """Smallest seed - rank; ties go to the lower score."""
  return _pick_min(_performances(matches, player_id))


def biggest_carry(matches: Optional[Matches], player_id: int) -> Optional[PerformanceHighlight]:
  return _pick_max(_teammate_gaps(matches, player_id))


def biggest_anchor(matches: Optional[Matches], player_id: int) -> Optional[PerformanceHighlight]:
  return _pick_min(_teammate_gaps(matches, player_id))


def notables(matches: Optional[Matches], player_id: int) -> Notables:
  return Notables(
      best_score=best_score(matches, player_id),
      worst_score=worst_score(matches, player_id),
      overperformance=biggest_overperformance(matches, player_id),
      underperformance=biggest_underperformance(matches, player_id),
      carry=biggest_carry(matches, player_id),
      anchor=biggest_anchor(matches, player_id),
  )


# ----------------------------
# Two-player comparisons
# ----------------------------
def _shared_rankings(matches: Optional[Matches], player_a: int, player_b: int) -> Iterator[Tuple[int, RankedResult, RankedResult]]:
  for match_id, match in (matches or {}).items():
    rankings = individual_rankings(match)
    a = next((r for r in rankings if r.player_id == player_a), None)
    b = next((r for r in rankings if r.player_id == player_b), None)
    if a is None or b is None:
      continue
    yield match_id, a, b


def head_to_head(matches: Optional[Matches], player_a: int, player_b: int) -> HeadToHead:
  """Record from player_a's side: the better (lower) individual rank wins."""
  record = HeadToHead()
  if player_a == player_b:
    return record
  for _, a, b in _shared_rankings(matches, player_a, player_b):
    if a.rank < b.rank:
      record.wins += 1
    elif a.rank > b.rank:
      record.losses += 1
    else:
      record.ties += 1
  return record


def total_head_to_head(matches: Optional[Matches], player_id: int, opponents: Iterable[int]) -> HeadToHead:
  """Summed record against every opponent (the player itself is skipped)."""
  total = HeadToHead()
  for opponent in set(opponents):
    if opponent == player_id:
      continue
    record = head_to_head(matches, player_id, opponent)
    total.wins += record.wins
    total.losses += record.losses
    total.ties += record.ties
  return total


def biggest_difference(matches: Optional[Matches], player_a: int, player_b: int) -> Optional[RivalryHighlight]:
  """Largest score margin where player_a placed ahead of player_b; ties go to the wider rank gap."""
  if player_a == player_b:
    return None
  best: Optional[RivalryHighlight] = None
  for match_id, a, b in _shared_rankings(matches, player_a, player_b):
    if a.rank >= b.rank:
      continue
    diff = a.score - b.score
    rank_diff = b.rank - a.rank
    if best is None or diff > best.score_difference or (diff == best.score_difference and rank_diff > best.rank_difference):
      best = RivalryHighlight(
          match_id=match_id,
          player_score=a.score,
          score_difference=diff,
          player_rank=a.rank,
          opponent_rank=b.rank,
          rank_difference=rank_diff,
      )
  return best


# ----------------------------
# Streaks
# ----------------------------
def win_streaks(matches: Optional[Matches], player_id: int) -> StreakSummary:
  """
  Walk the player's matches oldest first. A win is individual rank 1 exactly;
  anything else resets the running streak and its rating gain.
  Matches without a timestamp cannot be ordered and are ignored.
  """
  timeline: List[Tuple[datetime, RankedResult]] = []
  for _, match, _ in _player_entries(matches, player_id):
    if match.timestamp is None:
      continue
    ranking = player_ranking(match, player_id)
    if ranking:
      timeline.append((match.timestamp, ranking))
  timeline.sort(key=lambda t: t[0])

  out = StreakSummary()
  current_start: Optional[datetime] = None
  for when, ranking in timeline:
    if ranking.rank != 1:
      out.current_streak = 0
      out.current_streak_gain = 0
      current_start = None
      continue

    if out.current_streak == 0:
      current_start = when
    out.current_streak += 1
    out.current_streak_gain += ranking.player.rating_delta or 0

    longer = out.current_streak > out.longest_streak
    richer = out.current_streak == out.longest_streak and out.current_streak_gain > out.longest_streak_gain
    if longer or richer:
      out.longest_streak = out.current_streak
      out.longest_streak_gain = out.current_streak_gain
      out.longest_start = current_start
      out.longest_end = when
  return out
