import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from statcache.config import DATABASE_URL, MATCH_SOURCE_BASE_URL
from statcache.match_client import MatchSourceClient
from statcache.routes.leaderboard import router as leaderboard_router
from statcache.routes.players import router as players_router
from statcache.services.stat_cache import StatCache
from statcache.store import SqlStore

log = logging.getLogger("stat_cache")


def create_app(cache: Optional[StatCache] = None, match_client=None) -> FastAPI:
  """
  With no arguments the lifespan wires the real client, store and cache.
  Passing a cache (and client) skips that wiring.
  """

  @asynccontextmanager
  async def lifespan(app: FastAPI):
    if cache is not None:
      yield
      return

    store = SqlStore(DATABASE_URL)
    async with MatchSourceClient(MATCH_SOURCE_BASE_URL, store=store) as client:
      stat_cache = StatCache(client, store)
      app.state.match_client = client
      app.state.store = store
      app.state.cache = stat_cache
      await stat_cache.hydrate()
      stat_cache.start()
      log.info("[Startup] stat cache ready")
      try:
        yield
      finally:
        await stat_cache.stop()

  app = FastAPI(title="Community Stat Cache", lifespan=lifespan)
  if cache is not None:
    app.state.cache = cache
    app.state.match_client = match_client

  #health check
  @app.get("/api/health", response_class=PlainTextResponse)
  async def health():
    return "ok"

  #register API routes
  app.include_router(leaderboard_router)
  app.include_router(players_router)
  return app


app = create_app()
