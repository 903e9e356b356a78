"""
Admission gate for form-relay HTTP routes.
Rate limits requests per client address before any business logic runs.
"""

import logging
from typing import Optional

from fastapi import Request

from ..domain.ports import RateLimiter, RateLimitExceeded


logger = logging.getLogger(__name__)


def client_address(request: Request, trust_forwarded_for: bool = False, proxy_hops: int = 1) -> str:
    """
    Resolve the client key for rate limiting.

    Each trusted proxy appends the address it received the request from, so
    the client address sits proxy_hops entries from the right of
    X-Forwarded-For. Anything further left was written by the client.

    Args:
        request: Incoming request
        trust_forwarded_for: Read X-Forwarded-For (only behind a proxy)
        proxy_hops: Number of trusted proxies in front of the service

    Returns:
        Client IP, or "unknown" if the transport doesn't expose one
    """
    if trust_forwarded_for and proxy_hops > 0:
        forwarded: Optional[str] = request.headers.get("x-forwarded-for")
        if forwarded:
            hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
            if len(hops) >= proxy_hops:
                return hops[-proxy_hops]

    return request.client.host if request.client else "unknown"


# Dependency for FastAPI
class AdmissionDependency:
    """
    FastAPI dependency that charges one hit per request to a limiter.
    """

    def __init__(
        self,
        limiter: RateLimiter,
        message: str,
        trust_forwarded_for: bool = False,
        proxy_hops: int = 1
    ):
        self.limiter = limiter
        self.message = message
        self.trust_forwarded_for = trust_forwarded_for
        self.proxy_hops = proxy_hops

    async def __call__(self, request: Request) -> str:
        """
        Admit or reject the request.

        Returns:
            The client key that was charged

        Raises:
            RateLimitExceeded: If the client is over its limit
        """
        key = client_address(request, self.trust_forwarded_for, self.proxy_hops)

        if not self.limiter.allow(key):
            raise RateLimitExceeded(self.message, retry_after=self.limiter.retry_after(key))

        return key
