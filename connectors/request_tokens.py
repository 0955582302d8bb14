"""
Short-lived server-side store for OAuth 1.0a request-token contexts.

Between the authorize redirect and the callback, the provider only echoes
the request token back, so the request-token secret and the signed state
are parked here, keyed by that token.  Entries expire after the TTL and
the oldest entry is evicted once ``maxsize`` is reached.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class RequestTokenContext:
    tenant_id: str
    request_token_secret: str
    state: str
    created_at: float = field(default_factory=time.monotonic)


class RequestTokenStore:
    """In-memory TTL map of request token → context, bounded in size."""

    def __init__(
        self,
        ttl_seconds: float = 3600,
        maxsize: int = 1024,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._maxsize = max(1, maxsize)
        self._clock = clock
        # Insertion order doubles as age order.
        self._items: "OrderedDict[str, RequestTokenContext]" = OrderedDict()

    def put(self, request_token: str, tenant_id: str, secret: str, state: str) -> None:
        self.purge_expired()
        if request_token in self._items:
            del self._items[request_token]
        while len(self._items) >= self._maxsize:
            self._items.popitem(last=False)
            logger.warning("Request token store full, evicted the oldest pending flow")
        self._items[request_token] = RequestTokenContext(
            tenant_id=tenant_id,
            request_token_secret=secret,
            state=state,
            created_at=self._clock(),
        )

    def get(self, request_token: str) -> Optional[RequestTokenContext]:
        ctx = self._items.get(request_token)
        if ctx is None:
            return None
        if self._clock() - ctx.created_at > self._ttl:
            del self._items[request_token]
            return None
        return ctx

    def pop(self, request_token: str) -> Optional[RequestTokenContext]:
        ctx = self.get(request_token)
        self._items.pop(request_token, None)
        return ctx

    def purge_expired(self) -> int:
        now = self._clock()
        stale = [k for k, v in self._items.items() if now - v.created_at > self._ttl]
        for key in stale:
            del self._items[key]
        if stale:
            logger.debug("Purged %d expired request tokens", len(stale))
        return len(stale)

    def __len__(self) -> int:
        return len(self._items)
