"""Tests for window/scope/queue filtering and bundle trees."""

from datetime import datetime, timedelta, timezone

import pytest

from statcache.models import QueueFilter, Scope, TimeWindow
from statcache.services import bundles, player_stats

from helpers import NOW, as_map, make_match


@pytest.fixture
def matches():
  return as_map(
      # this week, squads, with roster member 2
      make_match(1, [[(1, 90, 10, 1500), (2, 80, 10, 1500)], [(3, 40, -10, 1500)]],
                 when=NOW - timedelta(days=2), tier="SQ"),
      # this week, solo queue, strangers only
      make_match(2, [[(1, 50, -4, 1500)], [(9, 70, 4, 1500)]],
                 when=NOW - timedelta(days=3), tier="T2"),
      # last season, solo, with roster member 2
      make_match(3, [[(1, 100, 8, 1500)], [(2, 20, -8, 1500)]],
                 when=NOW - timedelta(days=120), season=1, tier="T1"),
  )


def test_filter_by_week(matches) -> None:
  assert set(bundles.filter_by_week(matches, NOW)) == {1, 2}


def test_filter_by_season(matches) -> None:
  assert set(bundles.filter_by_season(matches, 2)) == {1, 2}
  assert set(bundles.filter_by_season(matches, 1)) == {3}


def test_filter_by_queue(matches) -> None:
  assert set(bundles.filter_by_queue(matches, QueueFilter.SQUADS)) == {1}
  assert set(bundles.filter_by_queue(matches, QueueFilter.SOLO)) == {2, 3}
  assert set(bundles.filter_by_queue(matches, QueueFilter.ALL)) == {1, 2, 3}


def test_community_scope_needs_another_member(matches) -> None:
  members = {1, 2}
  assert set(bundles.filter_by_scope(matches, Scope.COMMUNITY, 1, members)) == {1, 3}
  assert set(bundles.filter_by_scope(matches, Scope.GLOBAL, 1, members)) == {1, 2, 3}
  # being the only member in a match is not enough
  assert bundles.filter_by_scope(matches, Scope.COMMUNITY, 1, {1}) == {}


def test_basic_stats(matches) -> None:
  stats = bundles.basic_stats(matches, 1)
  assert stats.events_played == 3
  assert stats.win_rate == pytest.approx(2 / 3)
  assert stats.average_score == pytest.approx(80.0)
  assert stats.best_score == 100


def test_basic_stats_for_empty_input() -> None:
  stats = bundles.basic_stats({}, 1)
  assert (stats.win_rate, stats.average_score, stats.best_score, stats.events_played) == (-1, -1, None, 0)


def test_build_bundles_covers_every_combination(matches) -> None:
  tree = bundles.build_bundles(matches, 1, {1, 2}, NOW, season=2)
  for window in TimeWindow:
    for scope in Scope:
      assert set(tree[window][scope]) == set(QueueFilter)

  assert tree[TimeWindow.ALL][Scope.GLOBAL][QueueFilter.ALL].events_played == 3
  assert tree[TimeWindow.WEEKLY][Scope.GLOBAL][QueueFilter.SOLO].events_played == 1
  assert tree[TimeWindow.SEASON][Scope.COMMUNITY][QueueFilter.ALL].events_played == 1
  assert tree[TimeWindow.SEASON][Scope.COMMUNITY][QueueFilter.SOLO].win_rate == -1


def test_build_bundles_without_matches() -> None:
  tree = bundles.build_bundles(None, 1, set(), NOW)
  assert tree[TimeWindow.ALL][Scope.GLOBAL][QueueFilter.ALL].events_played == 0


def test_naive_timestamps_are_read_as_utc() -> None:
  naive = make_match(5, [[(1, 90, 5, 1500)], [(2, 80, -5, 1500)]], when=datetime(2026, 9, 30, 12, 0))
  assert naive.timestamp == datetime(2026, 9, 30, 12, 0, tzinfo=timezone.utc)

  tree = bundles.build_bundles(as_map(naive), 1, {1, 2}, NOW)
  assert tree[TimeWindow.WEEKLY][Scope.GLOBAL][QueueFilter.ALL].events_played == 1

  aware = make_match(7, [[(1, 95, 7, 1505)], [(2, 60, -7, 1495)]], when=NOW - timedelta(days=3))
  streak = player_stats.win_streaks(as_map(naive, aware), 1)
  assert streak.longest_streak == 2
  assert streak.longest_start == aware.timestamp


def test_timestamps_in_other_zones_are_converted() -> None:
  plus_two = timezone(timedelta(hours=2))
  m = make_match(6, [[(1, 90, 5, 1500)]], when=datetime(2026, 9, 30, 14, 0, tzinfo=plus_two))
  assert m.timestamp == datetime(2026, 9, 30, 12, 0, tzinfo=timezone.utc)
  assert m.timestamp.utcoffset() == timedelta(0)


def test_player_summary_for_community(matches) -> None:
  stats = bundles.player_summary(matches, 1, members={1, 2}, scope=Scope.COMMUNITY, now=NOW, name="Alice")
  assert (stats.player_id, stats.name, stats.scope) == (1, "Alice", Scope.COMMUNITY)
  assert stats.events_played == 2
  assert stats.win_rate == 1.0
  assert stats.average_score == pytest.approx(95.0)
  assert stats.best_score.match_id == 3
  assert stats.worst_score.match_id == 1
  assert stats.average_placement == 1.0
  assert stats.average_seed == 1.0
  assert (stats.community_head_to_head.wins, stats.community_head_to_head.losses) == (2, 0)


def test_player_summary_without_community(matches) -> None:
  stats = bundles.player_summary(matches, 1, window=TimeWindow.WEEKLY, queue=QueueFilter.SOLO, now=NOW)
  assert stats.events_played == 1
  assert stats.win_rate == 0.0
  assert stats.average_placement == 2.0
  assert stats.community_head_to_head is None


def test_player_summary_with_nothing_left() -> None:
  stats = bundles.player_summary({}, 1, members=set(), now=NOW)
  assert (stats.events_played, stats.win_rate, stats.average_seed, stats.best_score) == (0, -1, -1, None)
  assert stats.community_head_to_head.wins == 0
