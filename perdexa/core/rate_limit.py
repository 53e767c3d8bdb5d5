"""
Simple in-memory rate limiting for API endpoints
"""
from functools import wraps
from fastapi import HTTPException, status, Request
from typing import Callable, Optional
from datetime import timedelta
from collections import defaultdict
import logging
import threading

from perdexa.utils.dates import utcnow

logger = logging.getLogger(__name__)

# {identifier: [timestamp, ...]}
_rate_limit_store = defaultdict(list)
_rate_limit_lock = threading.Lock()


def _identifier(args, kwargs, identifier_func: Optional[Callable]) -> str:
    request = None
    actor = None
    for value in list(args) + list(kwargs.values()):
        if isinstance(value, Request):
            request = value
        elif hasattr(value, "user_id") and hasattr(value, "tenant_id"):  # Actor
            actor = value

    if identifier_func:
        return identifier_func(request, actor)
    if actor:
        return f"user_{actor.user_id}"
    if request and request.client:
        return request.client.host
    return "unknown"


def reset_rate_limits():
    with _rate_limit_lock:
        _rate_limit_store.clear()


def rate_limit(max_requests: int = 5, window_seconds: int = 300, identifier_func: Callable = None):
    """
    Rate limiting decorator for FastAPI endpoints.

    Args:
        max_requests: Maximum number of requests allowed
        window_seconds: Time window in seconds (default: 5 minutes)
        identifier_func: Function (request, actor) -> key (default: actor user id, then client IP)

    Usage:
        @router.post("/endpoint")
        @rate_limit(max_requests=5, window_seconds=300)
        def my_endpoint(actor: Actor = Depends(get_current_actor)):
            ...
    """
    def decorator(func: Callable):
        @wraps(func)
        def wrapper(*args, **kwargs):
            identifier = _identifier(args, kwargs, identifier_func)
            now = utcnow()
            window_start = now - timedelta(seconds=window_seconds)

            with _rate_limit_lock:
                recent = [ts for ts in _rate_limit_store[identifier] if ts > window_start]
                if len(recent) >= max_requests:
                    _rate_limit_store[identifier] = recent
                    logger.warning(f"[RATE_LIMIT] {func.__name__} exceeded by {identifier}")
                    raise HTTPException(
                        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                        detail=f"Rate limit exceeded: {max_requests} requests per {window_seconds} seconds. Please try again later.",
                    )
                recent.append(now)
                _rate_limit_store[identifier] = recent

            return func(*args, **kwargs)

        return wrapper
    return decorator
