"""
Domain registry: the single source of truth for custom domain records.
"""

import asyncio
import json
import logging
import secrets
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, List, Optional, Set, Tuple

import redis.asyncio as redis
from redis.exceptions import WatchError

from .errors import HostnameTaken, QuotaExceeded
from .models import CustomDomain, DomainStatus, NON_TERMINAL_STATUSES

logger = logging.getLogger("customdomain.domains.registry")

# Deletes the lease key only if it still holds our token
_RELEASE_LEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class _CacheEntry:
    """TTL cache entry for hostname lookups."""

    __slots__ = ("value", "expires_at")

    def __init__(self, value: Optional[CustomDomain], ttl: float):
        self.value = value
        self.expires_at = time.monotonic() + ttl


class DomainRegistry:
    """
    Registry of custom domain records.

    Uses Redis for persistence and cross-instance coordination, with an
    in-memory fallback when Redis is not configured or unreachable.
    Every write bumps the record's version so callers can apply
    optimistic compare-and-set updates.
    """

    POSITIVE_TTL = 10.0   # seconds to cache a servable hostname
    NEGATIVE_TTL = 10.0   # seconds to cache a miss

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        key_prefix: str = "customdomain:",
    ):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self._redis: Optional[redis.Redis] = None
        self._use_redis = bool(redis_url)
        # In-memory fallback
        self._memory_store: Dict[str, dict] = {}
        self._hostname_index: Dict[str, str] = {}
        self._team_index: Dict[str, Set[str]] = {}
        self._leases: Dict[str, Tuple[str, float]] = {}
        self._lock = asyncio.Lock()
        # In-process lookup cache
        self._cache: Dict[str, _CacheEntry] = {}

    async def _get_redis(self) -> Optional[redis.Redis]:
        """Get Redis connection."""
        if not self._use_redis:
            return None

        if self._redis is None:
            try:
                self._redis = redis.from_url(
                    self.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                )
                await self._redis.ping()
                logger.info("Domain registry connected to Redis")
            except Exception as e:
                logger.warning(
                    f"Redis unavailable for domain registry, using in-memory: {e}"
                )
                self._redis = None
                self._use_redis = False
                return None

        return self._redis

    def _domain_key(self, domain_id: str) -> str:
        return f"{self.key_prefix}domain:{domain_id}"

    def _hostname_key(self, hostname: str) -> str:
        return f"{self.key_prefix}hostname:{hostname}"

    def _team_key(self, team_id: str) -> str:
        return f"{self.key_prefix}team:{team_id}"

    def _all_key(self) -> str:
        return f"{self.key_prefix}domains"

    def _lease_key(self, domain_id: str) -> str:
        return f"{self.key_prefix}lease:{domain_id}"

    def _invalidate_cache(self, hostname: str) -> None:
        self._cache.pop(hostname, None)

    # ── Creation ─────────────────────────────────────────────────────

    async def insert_if_quota_allows(
        self, domain: CustomDomain, max_domains: int
    ) -> CustomDomain:
        """
        Atomically count the team's non-terminal domains and insert.

        Raises HostnameTaken if any team already holds the hostname and
        QuotaExceeded if the team is at its limit. Nothing is written in
        either case.
        """
        hostname = domain.hostname
        r = await self._get_redis()
        if r:
            await self._insert_redis(r, domain, max_domains)
        else:
            async with self._lock:
                if hostname in self._hostname_index:
                    raise HostnameTaken(f"Hostname {hostname} is already registered")
                active = sum(
                    1
                    for domain_id in self._team_index.get(domain.team_id, set())
                    if DomainStatus(self._memory_store[domain_id]["status"]) in NON_TERMINAL_STATUSES
                )
                if active >= max_domains:
                    raise QuotaExceeded(
                        f"Maximum of {max_domains} domains per team reached"
                    )
                self._memory_store[domain.id] = domain.to_dict()
                self._hostname_index[hostname] = domain.id
                self._team_index.setdefault(domain.team_id, set()).add(domain.id)

        self._invalidate_cache(hostname)
        logger.info(f"Registered domain: {hostname} -> team {domain.team_id}")
        return domain

    async def _insert_redis(
        self, r: redis.Redis, domain: CustomDomain, max_domains: int
    ) -> None:
        team_key = self._team_key(domain.team_id)
        hostname_key = self._hostname_key(domain.hostname)

        async with r.pipeline(transaction=True) as pipe:
            while True:
                try:
                    # Concurrent inserts for the team touch team_key; status
                    # changes elsewhere can only lower the count.
                    await pipe.watch(team_key, hostname_key)
                    if await pipe.exists(hostname_key):
                        raise HostnameTaken(
                            f"Hostname {domain.hostname} is already registered"
                        )
                    member_ids = await pipe.smembers(team_key)
                    active = 0
                    if member_ids:
                        raw = await pipe.mget([self._domain_key(m) for m in member_ids])
                        for data in raw:
                            if data and DomainStatus(json.loads(data)["status"]) in NON_TERMINAL_STATUSES:
                                active += 1
                    if active >= max_domains:
                        raise QuotaExceeded(
                            f"Maximum of {max_domains} domains per team reached"
                        )

                    pipe.multi()
                    pipe.set(self._domain_key(domain.id), json.dumps(domain.to_dict()))
                    pipe.set(hostname_key, domain.id)
                    pipe.sadd(team_key, domain.id)
                    pipe.sadd(self._all_key(), domain.id)
                    await pipe.execute()
                    return
                except WatchError:
                    logger.debug(f"Concurrent insert for team {domain.team_id}, retrying")
                    continue

    # ── Reads ────────────────────────────────────────────────────────

    async def get(self, domain_id: str) -> Optional[CustomDomain]:
        """Get domain record by id."""
        r = await self._get_redis()

        if r:
            data = await r.get(self._domain_key(domain_id))
            if not data:
                return None
            info = json.loads(data) if isinstance(data, str) else data
        else:
            info = self._memory_store.get(domain_id)
            if not info:
                return None

        return CustomDomain.from_dict(info)

    async def get_by_hostname(self, hostname: str) -> Optional[CustomDomain]:
        """Get domain record by its normalized hostname."""
        hostname = hostname.lower().rstrip(".")
        r = await self._get_redis()
        if r:
            domain_id = await r.get(self._hostname_key(hostname))
        else:
            domain_id = self._hostname_index.get(hostname)
        if not domain_id:
            return None
        return await self.get(domain_id)

    async def list_by_team(self, team_id: str) -> List[CustomDomain]:
        """List all domains for a team, oldest first."""
        r = await self._get_redis()
        domains: List[CustomDomain] = []

        if r:
            members = await r.smembers(self._team_key(team_id))
            ids = list(members)
        else:
            ids = list(self._team_index.get(team_id, set()))

        for domain_id in ids:
            entry = await self.get(domain_id)
            if entry:
                domains.append(entry)

        domains.sort(key=lambda d: d.created_at)
        return domains

    async def find_due(
        self, predicate: Callable[[CustomDomain], bool]
    ) -> List[CustomDomain]:
        """Return every domain for which predicate(domain) is true."""
        r = await self._get_redis()
        if r:
            ids = list(await r.smembers(self._all_key()))
            if not ids:
                return []
            raw = await r.mget([self._domain_key(i) for i in ids])
            records = [json.loads(data) for data in raw if data]
        else:
            records = list(self._memory_store.values())

        due = []
        for info in records:
            domain = CustomDomain.from_dict(info)
            if predicate(domain):
                due.append(domain)
        return due

    async def lookup(self, hostname: str) -> Optional[CustomDomain]:
        """
        Hot-path lookup for the edge: returns the domain only if it is
        verified and carries an active certificate.

        Uses an in-process TTL cache to avoid hitting Redis on every
        routed request. Writes only invalidate this process's cache, so
        other replicas may serve a stale answer for up to POSITIVE_TTL
        seconds after a certificate leaves the serving states.
        """
        hostname = hostname.lower().rstrip(".")

        cached = self._cache.get(hostname)
        if cached and time.monotonic() < cached.expires_at:
            return cached.value

        entry = await self.get_by_hostname(hostname)
        if entry and entry.is_serving:
            self._cache[hostname] = _CacheEntry(entry, self.POSITIVE_TTL)
            return entry

        # Cache the miss with shorter TTL
        self._cache[hostname] = _CacheEntry(None, self.NEGATIVE_TTL)
        return None

    # ── Writes ───────────────────────────────────────────────────────

    async def compare_and_set(
        self,
        domain_id: str,
        expected_version: int,
        mutation: Callable[[CustomDomain], None],
    ) -> Optional[CustomDomain]:
        """
        Apply mutation to the stored record if its version still matches.

        Returns the updated record, or None if the record is missing or
        was written by someone else since expected_version was read.
        """
        r = await self._get_redis()
        if r:
            updated = await self._compare_and_set_redis(
                r, domain_id, expected_version, mutation
            )
        else:
            async with self._lock:
                info = self._memory_store.get(domain_id)
                if not info or info["version"] != expected_version:
                    return None
                updated = CustomDomain.from_dict(info)
                mutation(updated)
                updated.version = expected_version + 1
                self._memory_store[domain_id] = updated.to_dict()

        if updated is not None:
            self._invalidate_cache(updated.hostname)
        return updated

    async def _compare_and_set_redis(
        self,
        r: redis.Redis,
        domain_id: str,
        expected_version: int,
        mutation: Callable[[CustomDomain], None],
    ) -> Optional[CustomDomain]:
        key = self._domain_key(domain_id)
        async with r.pipeline(transaction=True) as pipe:
            await pipe.watch(key)
            data = await pipe.get(key)
            if not data:
                return None
            updated = CustomDomain.from_dict(json.loads(data))
            if updated.version != expected_version:
                return None
            mutation(updated)
            updated.version = expected_version + 1
            pipe.multi()
            pipe.set(key, json.dumps(updated.to_dict()))
            try:
                await pipe.execute()
            except WatchError:
                return None
        return updated

    # ── Leases ───────────────────────────────────────────────────────

    async def acquire_lease(self, domain_id: str, ttl: float) -> Optional[str]:
        """
        Take the per-domain work lease.

        Returns a release token, or None if another worker holds it.
        """
        token = secrets.token_hex(16)
        r = await self._get_redis()
        if r:
            acquired = await r.set(
                self._lease_key(domain_id), token, nx=True, px=int(ttl * 1000)
            )
            return token if acquired else None

        async with self._lock:
            now = time.monotonic()
            held = self._leases.get(domain_id)
            if held and held[1] > now:
                return None
            self._leases[domain_id] = (token, now + ttl)
            return token

    async def release_lease(self, domain_id: str, token: str) -> bool:
        """Release a lease previously returned by acquire_lease."""
        r = await self._get_redis()
        if r:
            released = await r.eval(
                _RELEASE_LEASE_SCRIPT, 1, self._lease_key(domain_id), token
            )
            return bool(released)

        async with self._lock:
            held = self._leases.get(domain_id)
            if held and held[0] == token:
                del self._leases[domain_id]
                return True
            return False

    @asynccontextmanager
    async def lease(self, domain_id: str, ttl: float) -> AsyncIterator[bool]:
        """Hold the domain lease for the duration of the block.

        Yields False (and holds nothing) if the lease is taken.
        """
        token = await self.acquire_lease(domain_id, ttl)
        try:
            yield token is not None
        finally:
            if token is not None:
                await self.release_lease(domain_id, token)

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            logger.info("Domain registry Redis connection closed")
