"""Three-tier storage for the OAuth state nonce.

A nonce generated by ``begin`` has to survive the redirect round trip to the
provider. It is written to three independent places:

1. the ``oauth_states`` table (survives restarts, shared across instances)
2. an in-process cache with per-entry expiry (survives a database outage)
3. a signed cookie on the client (survives both, and host changes)

Reads go down the tiers in that order and return the first valid nonce.
Tier 1 writes run on a single background worker and are logged, never
awaited, so a slow database cannot hold up a request. Tier 1 failures are
logged and swallowed; after a failure tier 1 is skipped for a short back-off
window so requests don't queue behind a dead database.

Because a tier 1 write can be late or lost, tier 2 records when each nonce
was issued and which nonce was last consumed. A tier 1 row that is older
than the cached nonce, or that carries a nonce tier 2 has seen consumed, is
ignored.
"""

import itertools
import logging
import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from shop_oauth.auth.cookies import CookieDirective, StateCookieCodec
from shop_oauth.auth.config import DEFAULT_STATE_TTL_SECONDS
from shop_oauth.db.database import session_scope
from shop_oauth.db.models import OAuthStateStatus, from_db_time, to_db_time
from shop_oauth.db.repository import OAuthStateRepository

logger = logging.getLogger(__name__)

# Seconds to skip tier 1 after it fails
DEFAULT_TIER1_RETRY_AFTER = 30

# Run a tier-1 sweep on every Nth write
DEFAULT_SWEEP_EVERY_N_WRITES = 50


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _CacheEntry:
    nonce: str
    created_at: datetime
    expires_at: datetime
    consumed: bool = False


class MemoryStateCache:
    """Thread-safe shop -> nonce map with per-entry expiry (tier 2).

    One lock guards the dict; every critical section is a single dict
    operation, so lookups for different shops never wait on each other for
    longer than that. A consumed entry stays behind as a marker until it
    expires so a late or lost tier 1 write cannot bring its nonce back.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None):
        self._entries: dict[str, _CacheEntry] = {}
        self._lock = threading.Lock()
        self._clock = clock or _utcnow

    def set(
        self,
        shop: str,
        nonce: str,
        expires_at: datetime,
        created_at: datetime | None = None,
    ) -> None:
        entry = _CacheEntry(
            nonce=nonce,
            created_at=created_at or self._clock(),
            expires_at=expires_at,
        )
        with self._lock:
            self._entries[shop] = entry

    def entry(self, shop: str) -> Optional[_CacheEntry]:
        """The live entry for a shop, pending or consumed."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(shop)
            if entry is None:
                return None
            if entry.expires_at <= now:
                del self._entries[shop]
                return None
            return entry

    def get(self, shop: str) -> Optional[str]:
        """The pending nonce for a shop, if any."""
        entry = self.entry(shop)
        if entry is None or entry.consumed:
            return None
        return entry.nonce

    def consume(self, shop: str, nonce: str | None, expires_at: datetime) -> Optional[str]:
        """Replace the shop's entry with a consumed marker.

        Args:
            shop: Shop domain
            nonce: The nonce being consumed; defaults to the cached one
            expires_at: Earliest time the marker may be dropped

        Returns:
            The nonce now marked consumed, or None if there was nothing to
            mark or the shop already holds a different pending nonce
        """
        now = self._clock()
        with self._lock:
            entry = self._entries.get(shop)
            if entry is not None and entry.expires_at <= now:
                entry = None
            if entry is not None and not entry.consumed and nonce not in (None, entry.nonce):
                # A newer begin already replaced the nonce being consumed
                return None
            if nonce is None:
                if entry is None:
                    self._entries.pop(shop, None)
                    return None
                nonce = entry.nonce
            if entry is not None and entry.expires_at > expires_at:
                expires_at = entry.expires_at
            self._entries[shop] = _CacheEntry(
                nonce=nonce,
                created_at=entry.created_at if entry else now,
                expires_at=expires_at,
                consumed=True,
            )
        return nonce

    def sweep(self) -> int:
        """Remove expired entries. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [shop for shop, entry in self._entries.items() if entry.expires_at <= now]
            for shop in expired:
                del self._entries[shop]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


@dataclass(frozen=True)
class _Tier1Snapshot:
    """Fields of a tier-1 record copied out of its database session."""

    nonce: str
    status: str
    created_at: datetime
    expires_at: datetime
    used_at: Optional[datetime]


@dataclass
class SweepResult:
    """Counts from one sweep pass."""

    memory_removed: int = 0
    db_expired: int = 0
    db_deleted: int = 0
    db_available: bool = True


class StateStore:
    """Binds shop -> nonce across the OAuth redirect round trip.

    Construct once at process start and hand to request handlers; tests
    build a fresh instance per case. Call ``close`` on shutdown to let
    queued tier 1 writes finish.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        cookie_codec: StateCookieCodec,
        ttl_seconds: int = DEFAULT_STATE_TTL_SECONDS,
        sweep_every: int = DEFAULT_SWEEP_EVERY_N_WRITES,
        tier1_retry_after: int = DEFAULT_TIER1_RETRY_AFTER,
        clock: Callable[[], datetime] | None = None,
        executor: Executor | None = None,
    ):
        self.session_factory = session_factory
        self.cookie_codec = cookie_codec
        self.ttl_seconds = ttl_seconds
        self.sweep_every = sweep_every
        self.tier1_retry_after = tier1_retry_after
        self._clock = clock or _utcnow
        self.cache = MemoryStateCache(clock=self._clock)
        self._tier1_down_until: Optional[datetime] = None
        self._writes = itertools.count(1)
        # One worker keeps tier 1 writes for a shop in submission order
        self._executor = executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="oauth-state-tier1"
        )

    # -- tier 1 health -----------------------------------------------------

    @property
    def tier1_available(self) -> bool:
        down_until = self._tier1_down_until
        return down_until is None or self._clock() >= down_until

    def _tier1_failed(self, operation: str, shop: str | None, exc: Exception) -> None:
        self._tier1_down_until = self._clock() + timedelta(seconds=self.tier1_retry_after)
        logger.warning(
            "State tier 1 %s failed for %s, skipping it for %ss: %s: %s",
            operation,
            shop,
            self.tier1_retry_after,
            type(exc).__name__,
            exc,
        )

    def _tier1_ok(self) -> None:
        if self._tier1_down_until is not None:
            logger.info("State tier 1 reachable again")
            self._tier1_down_until = None

    # -- operations ----------------------------------------------------------

    def put(
        self,
        shop: str,
        nonce: str,
        ttl_seconds: int | None = None,
        request_ip: str | None = None,
        user_agent: str | None = None,
    ) -> CookieDirective:
        """Store the nonce for a shop in all tiers, replacing any previous one.

        The tier 1 write is queued and this returns without waiting for it.
        Never raises for a tier-1 failure.

        Returns:
            The Set-Cookie directive carrying the tier-3 copy
        """
        ttl = ttl_seconds or self.ttl_seconds
        now = self._clock()
        expires_at = now + timedelta(seconds=ttl)

        self.cache.set(shop, nonce, expires_at, created_at=now)

        def write(repo: OAuthStateRepository) -> None:
            repo.replace(
                shop=shop,
                nonce=nonce,
                created_at=to_db_time(now),
                expires_at=to_db_time(expires_at),
                request_ip=request_ip,
                user_agent=(user_agent or "")[:512] or None,
            )

        sweep = bool(self.sweep_every) and next(self._writes) % self.sweep_every == 0
        self._submit_tier1("put", shop, write, sweep_after=sweep)
        return self.cookie_codec.issue(shop, nonce, ttl)

    def get(self, shop: str, cookie_value: str | None = None) -> Optional[str]:
        """Look up the pending nonce for a shop.

        Args:
            shop: Normalized shop domain
            cookie_value: The state cookie from the inbound request, if any

        Returns:
            The nonce, or None when no tier holds a valid one. The caller
            cannot tell which tier answered or why a lookup missed.
        """
        now = self._clock()
        snapshot = self._read_tier1(shop)
        cached = self.cache.entry(shop)
        consumed = cached.nonce if cached is not None and cached.consumed else None
        pending = cached if cached is not None and not cached.consumed else None

        if (
            snapshot is not None
            and snapshot.status == OAuthStateStatus.PENDING
            and snapshot.expires_at > now
        ):
            if snapshot.nonce == consumed:
                logger.warning("Ignoring tier 1 nonce for %s: already consumed in tier 2", shop)
            elif (
                pending is not None
                and pending.nonce != snapshot.nonce
                and pending.created_at >= snapshot.created_at
            ):
                logger.info("Tier 1 holds an older nonce for %s, using tier 2", shop)
            else:
                logger.debug("State for %s found in tier 1", shop)
                return snapshot.nonce

        tier = "memory"
        nonce = pending.nonce if pending is not None else None
        if nonce is None:
            tier = "cookie"
            nonce = self.cookie_codec.read(cookie_value, shop)

        if nonce is None:
            self._log_miss(shop, snapshot, now)
            return None

        if nonce == consumed:
            logger.warning("Refusing %s-tier nonce for %s: already consumed", tier, shop)
            return None

        if (
            snapshot is not None
            and snapshot.nonce == nonce
            and snapshot.status != OAuthStateStatus.PENDING
        ):
            logger.warning(
                "Refusing %s-tier nonce for %s: tier 1 has it as %s",
                tier,
                shop,
                snapshot.status,
            )
            return None

        logger.info("State for %s found in %s tier", shop, tier)
        return nonce

    def delete(self, shop: str, nonce: str | None = None) -> CookieDirective:
        """Consume the shop's state: tier 1 -> used, tier 2 -> consumed.

        Idempotent; calling it again, or for a shop with no state, is a
        no-op.

        Args:
            shop: Shop domain
            nonce: The nonce being consumed, when the caller knows it

        Returns:
            The directive clearing the tier-3 cookie
        """
        self._finish(shop, nonce, OAuthStateStatus.USED)
        return self.cookie_codec.clear()

    def fail(self, shop: str, nonce: str | None = None) -> None:
        """Retire the shop's state after a failed exchange: tier 1 -> error.

        The nonce can no longer be redeemed; the merchant restarts the
        install. Never raises for a tier-1 failure.
        """
        self._finish(shop, nonce, OAuthStateStatus.ERROR)

    def sweep(self) -> SweepResult:
        """Drop expired tier-2 entries and expire/delete stale tier-1 rows."""
        now = self._clock()
        result = SweepResult(memory_removed=self.cache.sweep())

        if self.tier1_available:
            expired, deleted = self._sweep_tier1(now)
            result.db_expired = expired
            result.db_deleted = deleted
        result.db_available = self.tier1_available

        if result.memory_removed or result.db_expired or result.db_deleted:
            logger.info(
                "State sweep: memory_removed=%d db_expired=%d db_deleted=%d",
                result.memory_removed,
                result.db_expired,
                result.db_deleted,
            )
        return result

    def flush(self, timeout: float | None = None) -> None:
        """Block until every tier 1 write queued so far has run."""
        self._executor.submit(lambda: None).result(timeout=timeout)

    def close(self) -> None:
        """Finish queued tier 1 writes and stop the worker."""
        self._executor.shutdown(wait=True)

    # -- helpers -------------------------------------------------------------

    def _finish(self, shop: str, nonce: str | None, status: str) -> None:
        now = self._clock()
        # The marker outlives any tier 1 row the nonce could still be pending in
        marked = self.cache.consume(shop, nonce, now + timedelta(seconds=self.ttl_seconds))
        if nonce is None:
            nonce = marked
        used_at = to_db_time(now)

        def write(repo: OAuthStateRepository) -> None:
            if status == OAuthStateStatus.USED:
                changed = repo.mark_used(shop, used_at=used_at, nonce=nonce)
            else:
                changed = repo.mark_error(shop, nonce=nonce)
            if changed:
                logger.debug("State tier 1 record for %s marked %s", shop, status)

        self._submit_tier1(f"mark {status}", shop, write)

    def _submit_tier1(
        self,
        operation: str,
        shop: str,
        write: Callable[[OAuthStateRepository], None],
        sweep_after: bool = False,
    ) -> None:
        if not self.tier1_available:
            logger.info("State tier 1 marked unavailable, skipping %s for %s", operation, shop)
            return
        future = self._executor.submit(self._run_tier1, operation, shop, write, sweep_after)
        future.add_done_callback(self._log_unexpected)

    def _run_tier1(
        self,
        operation: str,
        shop: str,
        write: Callable[[OAuthStateRepository], None],
        sweep_after: bool,
    ) -> None:
        # Re-checked here: writes queued before a failure are dropped, not retried
        if not self.tier1_available:
            logger.info("State tier 1 marked unavailable, dropping %s for %s", operation, shop)
            return
        try:
            with session_scope(self.session_factory) as db:
                write(OAuthStateRepository(db))
        except SQLAlchemyError as e:
            self._tier1_failed(operation, shop, e)
            return
        self._tier1_ok()
        if sweep_after:
            self._sweep_tier1(self._clock())

    @staticmethod
    def _log_unexpected(future: Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("State tier 1 write raised %s", type(exc).__name__, exc_info=exc)

    def _read_tier1(self, shop: str) -> Optional[_Tier1Snapshot]:
        if not self.tier1_available:
            logger.debug("State tier 1 marked unavailable, skipping read for %s", shop)
            return None
        try:
            with session_scope(self.session_factory) as db:
                record = OAuthStateRepository(db).get_by_shop(shop)
                snapshot = None
                if record is not None:
                    snapshot = _Tier1Snapshot(
                        nonce=record.nonce,
                        status=record.status,
                        created_at=from_db_time(record.created_at),
                        expires_at=from_db_time(record.expires_at),
                        used_at=from_db_time(record.used_at),
                    )
        except SQLAlchemyError as e:
            self._tier1_failed("get", shop, e)
            return None
        self._tier1_ok()
        return snapshot

    def _sweep_tier1(self, now: datetime) -> tuple[int, int]:
        # Finished records are kept one extra TTL so a late callback can
        # still be diagnosed from the logs
        cutoff = now - timedelta(seconds=self.ttl_seconds)
        try:
            with session_scope(self.session_factory) as db:
                repo = OAuthStateRepository(db)
                expired = repo.expire_pending(to_db_time(now))
                deleted = repo.delete_finished_before(to_db_time(cutoff))
        except SQLAlchemyError as e:
            self._tier1_failed("sweep", None, e)
            return 0, 0
        self._tier1_ok()
        return expired, deleted

    def _log_miss(self, shop: str, snapshot: Optional[_Tier1Snapshot], now: datetime) -> None:
        if snapshot is None:
            reason = "no record" if self.tier1_available else "tier 1 unavailable, no fallback"
        elif snapshot.status == OAuthStateStatus.USED:
            reason = f"already used at {snapshot.used_at.isoformat() if snapshot.used_at else '?'}"
        elif snapshot.status == OAuthStateStatus.ERROR:
            reason = "a previous exchange with this state failed"
        elif snapshot.status == OAuthStateStatus.EXPIRED or snapshot.expires_at <= now:
            reason = f"expired at {snapshot.expires_at.isoformat()}"
        else:
            reason = f"status={snapshot.status}"
        logger.warning("No valid OAuth state for %s (%s)", shop, reason)
