import os
from dotenv import load_dotenv

load_dotenv()

MATCH_SOURCE_BASE_URL = os.getenv("MATCH_SOURCE_BASE_URL", "https://lounge.mkcentral.com/api")
MATCH_SOURCE_API_KEY = os.getenv("MATCH_SOURCE_API_KEY") or None

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///statcache.db")

# Single season authority: seasonal windows and seasonal rating deltas both key off this.
CURRENT_SEASON = int(os.getenv("CURRENT_SEASON", "2"))
DEFAULT_GAME = os.getenv("DEFAULT_GAME", "mkworld12p")

# Tier that counts as the team queue; everything else is solo queue
SQUAD_TIER = "SQ"

#Cache timing (seconds)
CACHE_TTL_SECONDS = int(os.getenv("CACHE_TTL_SECONDS", str(60 * 60)))
REFRESH_AHEAD_SECONDS = int(os.getenv("REFRESH_AHEAD_SECONDS", str(50 * 60)))
SCAN_INTERVAL_SECONDS = int(os.getenv("SCAN_INTERVAL_SECONDS", str(10 * 60)))

#Rebuild pacing
REBUILD_BATCH_SIZE = int(os.getenv("REBUILD_BATCH_SIZE", "5"))
REBUILD_BATCH_DELAY_SECONDS = float(os.getenv("REBUILD_BATCH_DELAY_SECONDS", "0.1"))
MATCH_FETCH_CHUNK = 5

LEADERBOARD_SIZE = 10

#Upstream pacing: token bucket
RATE_PER_SEC = float(os.getenv("MATCH_SOURCE_RATE_PER_SEC", "2.0"))
RATE_CAPACITY = int(os.getenv("MATCH_SOURCE_RATE_CAPACITY", "20"))


def game_modes_for_season(season: int) -> list[str]:
  if season < 2:
    return ["mkworld"]
  return ["mkworld12p", "mkworld24p"]
