"""Fixed-window per-account rate limiting on Redis.

Each account gets one counter per minute bucket:

    rate_limit:{account_id}:{floor(now / 60)}

The counter is incremented and (on its first increment only) given a 60 s
expiry inside a single MULTI/EXEC transaction, so concurrent requests in the
same window can never under-count.  Rejected requests keep their increment:
a client hammering a full window does not get its slots back by retrying.

This is a fixed window, not a sliding one.  A burst straddling a bucket
boundary can briefly admit up to twice the nominal rate.

``EXPIRE ... NX`` requires Redis >= 7.0.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from tollgate.context import ServiceContext
from tollgate.errors import InternalError, RateLimitExceeded
from tollgate.security.key_resolver import DEFAULT_RATE_LIMIT_PER_MINUTE

logger = logging.getLogger(__name__)

RATE_WINDOW_SECONDS = 60


@dataclass(frozen=True)
class RateLimitStatus:
    """Admission metadata exposed as X-RateLimit-* response headers."""

    limit: int
    remaining: int

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
        }


def get_rate_limit_key(account_id: int, now: float) -> str:
    """Return the counter key for the window containing ``now``."""
    return f"rate_limit:{account_id}:{int(now // RATE_WINDOW_SECONDS)}"


async def admit(ctx: ServiceContext, account_id: int, limit: int | None) -> RateLimitStatus:
    """Count this request against the account's current window.

    Raises:
        RateLimitExceeded: The post-increment count is above ``limit``.
        InternalError:     Redis failed.
    """
    limit = limit or DEFAULT_RATE_LIMIT_PER_MINUTE
    key = get_rate_limit_key(account_id, ctx.clock())

    try:
        async with ctx.redis.pipeline(transaction=True) as pipe:
            current, _ = await (
                pipe.incr(key).expire(key, RATE_WINDOW_SECONDS, nx=True).execute()
            )
    except Exception as exc:
        logger.error("Rate limit error for account %s", account_id, exc_info=True)
        raise InternalError("Rate limiting failed") from exc

    if current > limit:
        logger.info(
            "Rate limit exceeded: account=%s count=%d limit=%d", account_id, current, limit
        )
        raise RateLimitExceeded(limit)

    return RateLimitStatus(limit=limit, remaining=max(0, limit - current))
