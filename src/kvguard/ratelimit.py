"""Fixed-window rate limiting on top of the store client.

A counter record ``rate_limit:<scope>:<identity>`` accumulates requests
within a window whose length is the record's TTL. Two window policies are
available:

- **fixed** (default): one atomic store round-trip increments the counter
  only while it is below the limit and sets the expiry only when the counter
  is created. The window is anchored at the first request and never extended;
  concurrent requests cannot over-admit.
- **rearm**: read the counter, compare, and write ``count + 1`` with the full
  window TTL re-applied on every admitted request. The read and the write are
  separate round-trips, so concurrent requests for the same identity can
  over-admit by up to the number in flight, and sustained traffic keeps
  pushing the window's end forward.

Rate limiting is best-effort, not a security boundary: when the store is
unreachable or times out, requests are admitted (fail-open).
"""

import logging

from kvguard.contrib.prometheus.metrics import record_admission, record_fallback, record_store_error
from kvguard.core import GuardMetrics, StoreClient
from kvguard.exceptions import StoreUnavailableError
from kvguard.keys import RATE_LIMIT_PREFIX, namespaced
from kvguard.schemas import WINDOW_POLICIES, AdmissionResult, RateLimitPolicy, WindowPolicy

logger = logging.getLogger(__name__)


class RateLimiter:
    """Admission control for (scope, identity) pairs.

    The limiter holds a shared, non-owning reference to the store client and
    only touches keys under ``rate_limit:``.

    Example:
        >>> limiter = RateLimiter(store)
        >>> if not await limiter.admit("api", user_id, limit=50, window_seconds=3600):
        ...     raise TooManyRequests()
    """

    def __init__(
        self,
        store: StoreClient,
        *,
        window_policy: WindowPolicy = "fixed",
        key_prefix: str = RATE_LIMIT_PREFIX,
        metrics: GuardMetrics | None = None,
    ) -> None:
        """Initialize the rate limiter.

        Args:
            store: Store client shared with the other components
            window_policy: "fixed" or "rearm" (see module docstring)
            key_prefix: Namespace for counter keys
            metrics: Optional shared in-process metrics

        Raises:
            ValueError: If window_policy is unknown
        """
        if window_policy not in WINDOW_POLICIES:
            raise ValueError(
                f"window_policy must be one of {WINDOW_POLICIES}, got {window_policy!r}"
            )

        self._store = store
        self._window_policy = window_policy
        self._key_prefix = key_prefix
        self._metrics = metrics if metrics is not None else GuardMetrics()

    @property
    def window_policy(self) -> str:
        """Return the window policy."""
        return self._window_policy

    @property
    def metrics(self) -> GuardMetrics:
        """Return the in-process metrics."""
        return self._metrics

    def key(self, scope: str, identity: str) -> str:
        """Return the counter key for a (scope, identity) pair."""
        return namespaced(self._key_prefix, scope, identity)

    async def admit(self, scope: str, identity: str, limit: int, window_seconds: int) -> bool:
        """Decide whether a request is admitted.

        Args:
            scope: Limiter instance (e.g. "global", "api", "login")
            identity: Caller identity (IP address, user id, API key)
            limit: Maximum admitted requests per window
            window_seconds: Window length in seconds

        Returns:
            True if admitted (including fail-open admissions), False if rejected

        Raises:
            ValueError: If limit or window_seconds is not positive
        """
        policy = RateLimitPolicy(limit, window_seconds)
        allowed, _ = await self._decide(scope, identity, policy)
        return allowed

    async def check(
        self, scope: str, identity: str, limit: int, window_seconds: int
    ) -> AdmissionResult:
        """Decide admission and report counter state for response headers.

        Same decision as admit(), plus the counter value and the time until
        the window resets.

        Raises:
            ValueError: If limit or window_seconds is not positive
        """
        policy = RateLimitPolicy(limit, window_seconds)
        allowed, count = await self._decide(scope, identity, policy)

        reset_in: float | None = None
        if count is not None:
            try:
                reset_in = await self._store.ttl(self.key(scope, identity))
            except StoreUnavailableError as e:
                logger.debug("Could not read window reset for scope '%s': %s", scope, e)

        return AdmissionResult(
            allowed=allowed,
            limit=policy.limit,
            window_seconds=policy.window_seconds,
            count=count if count is not None else 0,
            reset_in=reset_in,
        )

    async def current_count(self, scope: str, identity: str) -> int:
        """Return the counter value without modifying it.

        Absent keys, malformed values and store failures all read as 0.
        """
        key = self.key(scope, identity)
        try:
            raw = await self._store.get(key)
        except StoreUnavailableError as e:
            self._metrics.record_store_error()
            record_store_error("rate_limit")
            logger.warning("Could not read counter '%s': %s", key, e)
            return 0
        return self._parse_count(key, raw)

    async def _decide(
        self, scope: str, identity: str, policy: RateLimitPolicy
    ) -> tuple[bool, int | None]:
        """Run the window policy; returns (allowed, count) with count None on fail-open."""
        key = self.key(scope, identity)
        try:
            if self._window_policy == "fixed":
                update = await self._store.increment(
                    key, ttl_seconds=policy.window_seconds, ceiling=policy.limit
                )
                allowed, count = update.applied, update.value
            else:
                allowed, count = await self._read_then_write(key, policy)
        except StoreUnavailableError as e:
            self._metrics.record_store_error()
            self._metrics.record_fail_open()
            record_store_error("rate_limit")
            record_fallback("rate_limit")
            record_admission(scope, "fail_open")
            logger.warning(
                "Rate limiter store failure for scope '%s', allowing request (fail_open): %s",
                scope,
                e,
            )
            return True, None

        self._metrics.record_admission(allowed)
        record_admission(scope, "admitted" if allowed else "rejected")
        logger.debug(
            "Scope '%s' identity '%s': %s (%d/%d in %ds window)",
            scope,
            identity,
            "admitted" if allowed else "rejected",
            count,
            policy.limit,
            policy.window_seconds,
        )
        return allowed, count

    async def _read_then_write(self, key: str, policy: RateLimitPolicy) -> tuple[bool, int]:
        """Legacy protocol: read, compare, write back with the window TTL re-armed.

        The read and the write are not atomic; concurrent callers may both
        read the same value and both be admitted.
        """
        count = self._parse_count(key, await self._store.get(key))
        if count >= policy.limit:
            return False, count

        count += 1
        await self._store.set(key, str(count), ttl_seconds=policy.window_seconds)
        return True, count

    @staticmethod
    def _parse_count(key: str, raw: bytes | None) -> int:
        if raw is None:
            return 0
        try:
            return max(0, int(raw))
        except ValueError:
            logger.warning("Malformed counter value under '%s', treating as absent", key)
            return 0
