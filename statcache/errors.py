# statcache/errors.py

class StatCacheError(Exception):
  """Base for errors raised at the collaborator edges."""


class UpstreamUnavailable(StatCacheError):
  """Match source network failure or a 4xx/5xx response."""

  def __init__(self, message: str, status_code: int | None = None):
    super().__init__(message)
    self.status_code = status_code


class PersistenceFailure(StatCacheError):
  """Snapshot or roster storage failed."""
