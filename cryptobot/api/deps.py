"""Shared API dependencies."""

from fastapi import Request

from cryptobot.services.cache import TTLCache

# Used when the engine is disabled and the API runs standalone
_standalone_cache = TTLCache()


def get_runtime(request: Request):
    """The running TradingRuntime, or None when the engine is disabled."""
    return getattr(request.app.state, "runtime", None)


def get_cache(request: Request) -> TTLCache:
    runtime = get_runtime(request)
    return runtime.cache if runtime is not None else _standalone_cache
