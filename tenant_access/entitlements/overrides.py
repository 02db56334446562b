"""
Override Store - per-tenant, per-feature grants and revocations.

Provides:
- OverrideStore: abstract contract (get / upsert / delete / list / cleanup)
- InMemoryOverrideStore: dict-backed store with striped per-key write locks
- SqlOverrideStore: SQLAlchemy store using a single-statement upsert
- CachedOverrideStore: read-through cache wrapper, invalidated on write

Overrides are the only mechanism that can deny a feature the tier catalog
grants, or grant a feature the catalog denies. Upserts are atomic per
(tenant_id, feature) key; the last committed write wins and no history is kept.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from threading import Lock
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import delete as sa_delete
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from tenant_access.entitlements.cache import OverrideCache
from tenant_access.entitlements.errors import OverrideStoreError
from tenant_access.entitlements.models import FeatureOverride, parse_timestamp
from tenant_access.models.base import generate_uuid
from tenant_access.models.feature_override import TenantFeatureOverride

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

LOCK_STRIPES = 64


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OverrideStore(ABC):
    """Contract shared by every override store."""

    @abstractmethod
    def get(
        self,
        tenant_id: str,
        feature: str,
        now: Optional[datetime] = None,
    ) -> Optional[FeatureOverride]:
        """Point lookup. Overrides whose expires_at has passed are ignored."""

    @abstractmethod
    def upsert(
        self,
        tenant_id: str,
        feature: str,
        granted: bool,
        reason: str,
        granted_by: str,
        expires_at: Optional[datetime] = None,
    ) -> None:
        """Create or replace the override for (tenant_id, feature)."""

    @abstractmethod
    def delete(self, tenant_id: str, feature: str) -> bool:
        """Remove an override. Returns True if one existed."""

    @abstractmethod
    def list_for_tenant(
        self,
        tenant_id: str,
        include_expired: bool = False,
        now: Optional[datetime] = None,
    ) -> List[FeatureOverride]:
        """All overrides for a tenant, ordered by feature."""

    @abstractmethod
    def cleanup_expired(self, now: Optional[datetime] = None) -> int:
        """Delete overrides whose expiry has passed. Returns the count."""

    def bulk_upsert(
        self,
        tenant_id: str,
        features: Iterable[str],
        granted: bool,
        reason: str,
        granted_by: str,
        expires_at: Optional[datetime] = None,
    ) -> int:
        """
        Apply the same grant/revoke to several features.

        Each feature is its own atomic upsert; there is no cross-key
        transaction. Returns the number of features written.
        """
        count = 0
        for feature in dict.fromkeys(features):
            self.upsert(tenant_id, feature, granted, reason, granted_by, expires_at)
            count += 1
        logger.info(
            "Bulk override applied",
            extra={
                "tenant_id": tenant_id,
                "granted": granted,
                "feature_count": count,
                "granted_by": granted_by,
            },
        )
        return count


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

class InMemoryOverrideStore(OverrideStore):
    """
    Thread-safe in-memory store.

    Writes for the same key serialize on one of a fixed pool of striped
    locks, so lock memory stays bounded however many keys come and go.
    Stored values are immutable, so a reader sees either the previous or
    the next override, never a mix.
    """

    def __init__(self, clock: Optional[Clock] = None, lock_stripes: int = LOCK_STRIPES):
        self._overrides: Dict[Tuple[str, str], FeatureOverride] = {}
        self._stripes: Tuple[Lock, ...] = tuple(Lock() for _ in range(max(1, lock_stripes)))
        self._clock = clock or _utcnow

    def _lock_for(self, key: Tuple[str, str]) -> Lock:
        return self._stripes[hash(key) % len(self._stripes)]

    def get(self, tenant_id, feature, now=None):
        override = self._overrides.get((tenant_id, feature))
        if override is None or override.is_expired(now or self._clock()):
            return None
        return override

    def upsert(self, tenant_id, feature, granted, reason, granted_by, expires_at=None):
        key = (tenant_id, feature)
        with self._lock_for(key):
            self._overrides[key] = FeatureOverride(
                tenant_id=tenant_id,
                feature=feature,
                granted=bool(granted),
                reason=reason or "",
                granted_by=granted_by,
                updated_at=self._clock(),
                expires_at=parse_timestamp(expires_at),
            )

    def delete(self, tenant_id, feature):
        key = (tenant_id, feature)
        with self._lock_for(key):
            return self._overrides.pop(key, None) is not None

    def list_for_tenant(self, tenant_id, include_expired=False, now=None):
        now = now or self._clock()
        overrides = [
            o for (tid, _), o in list(self._overrides.items())
            if tid == tenant_id and (include_expired or not o.is_expired(now))
        ]
        return sorted(overrides, key=lambda o: o.feature)

    def cleanup_expired(self, now=None):
        now = now or self._clock()
        removed = 0
        for key, override in list(self._overrides.items()):
            if not override.is_expired(now):
                continue
            with self._lock_for(key):
                # Re-check under the lock; a writer may have replaced it
                current = self._overrides.get(key)
                if current is not None and current.is_expired(now):
                    del self._overrides[key]
                    removed += 1
        return removed


# ---------------------------------------------------------------------------
# SQL store
# ---------------------------------------------------------------------------

class SqlOverrideStore(OverrideStore):
    """
    Override store backed by the tenant_feature_overrides table.

    PostgreSQL and SQLite get a single INSERT ... ON CONFLICT DO UPDATE on
    the (tenant_id, feature) unique constraint. Other dialects fall back to
    select-then-write, retrying once as an update when a concurrent insert
    wins the unique constraint.

    Every SQLAlchemy failure is raised as OverrideStoreError.
    """

    UPSERT_DIALECTS = {
        "postgresql": postgresql.insert,
        "sqlite": sqlite.insert,
    }

    def __init__(self, session_factory: sessionmaker, clock: Optional[Clock] = None):
        self._session_factory = session_factory
        self._clock = clock or _utcnow

    def _query(self, session: Session, tenant_id: str, feature: str):
        return session.query(TenantFeatureOverride).filter(
            TenantFeatureOverride.tenant_id == tenant_id,
            TenantFeatureOverride.feature == feature,
        )

    def get(self, tenant_id, feature, now=None):
        session = self._session_factory()
        try:
            row = self._query(session, tenant_id, feature).one_or_none()
            override = row.to_domain() if row is not None else None
        except SQLAlchemyError as e:
            raise OverrideStoreError("get", tenant_id, e) from e
        finally:
            session.close()

        if override is None or override.is_expired(now or self._clock()):
            return None
        return override

    def upsert(self, tenant_id, feature, granted, reason, granted_by, expires_at=None):
        now = self._clock()
        values = {
            "granted": bool(granted),
            "reason": reason or "",
            "granted_by": granted_by,
            "expires_at": parse_timestamp(expires_at),
            "updated_at": now,
        }

        session = self._session_factory()
        try:
            insert_fn = self.UPSERT_DIALECTS.get(session.get_bind().dialect.name)
            if insert_fn is not None:
                stmt = insert_fn(TenantFeatureOverride.__table__).values(
                    id=generate_uuid(),
                    tenant_id=tenant_id,
                    feature=feature,
                    created_at=now,
                    **values,
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["tenant_id", "feature"],
                    set_=values,
                )
                session.execute(stmt)
                session.commit()
            else:
                self._upsert_with_retry(session, tenant_id, feature, values)
        except SQLAlchemyError as e:
            session.rollback()
            raise OverrideStoreError("upsert", tenant_id, e) from e
        finally:
            session.close()

        logger.info(
            "Feature override written",
            extra={
                "tenant_id": tenant_id,
                "feature": feature,
                "granted": bool(granted),
                "granted_by": granted_by,
            },
        )

    def _upsert_with_retry(self, session: Session, tenant_id: str, feature: str, values: dict) -> None:
        row = self._query(session, tenant_id, feature).with_for_update().one_or_none()
        if row is None:
            try:
                session.add(TenantFeatureOverride(tenant_id=tenant_id, feature=feature, **values))
                session.commit()
                return
            except IntegrityError:
                # Lost the insert race; the winner's row now exists
                session.rollback()
                row = self._query(session, tenant_id, feature).with_for_update().one()

        for column, value in values.items():
            setattr(row, column, value)
        session.commit()

    def delete(self, tenant_id, feature):
        session = self._session_factory()
        try:
            result = session.execute(
                sa_delete(TenantFeatureOverride).where(
                    TenantFeatureOverride.tenant_id == tenant_id,
                    TenantFeatureOverride.feature == feature,
                )
            )
            session.commit()
            return result.rowcount > 0
        except SQLAlchemyError as e:
            session.rollback()
            raise OverrideStoreError("delete", tenant_id, e) from e
        finally:
            session.close()

    def list_for_tenant(self, tenant_id, include_expired=False, now=None):
        session = self._session_factory()
        try:
            rows = (
                session.query(TenantFeatureOverride)
                .filter(TenantFeatureOverride.tenant_id == tenant_id)
                .order_by(TenantFeatureOverride.feature)
                .all()
            )
            overrides = [row.to_domain() for row in rows]
        except SQLAlchemyError as e:
            raise OverrideStoreError("list", tenant_id, e) from e
        finally:
            session.close()

        if include_expired:
            return overrides
        now = now or self._clock()
        return [o for o in overrides if not o.is_expired(now)]

    def cleanup_expired(self, now=None):
        now = now or self._clock()
        session = self._session_factory()
        try:
            result = session.execute(
                sa_delete(TenantFeatureOverride).where(
                    TenantFeatureOverride.expires_at.is_not(None),
                    TenantFeatureOverride.expires_at <= now,
                )
            )
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise OverrideStoreError("cleanup_expired", "*", e) from e
        finally:
            session.close()

        logger.info("Expired feature overrides removed", extra={"count": result.rowcount})
        return result.rowcount


# ---------------------------------------------------------------------------
# Cached wrapper
# ---------------------------------------------------------------------------

class CachedOverrideStore(OverrideStore):
    """
    Read-through cache in front of another store.

    Point lookups are cached for OverrideCache.ttl_seconds. Expiry is
    re-checked on every hit, so a cached override never outlives its
    expires_at. Every write invalidates the affected key.

    A miss is only written back if no write went through this wrapper while
    the backing read was in flight; otherwise a reader could re-cache the
    value a concurrent upsert just replaced. Writes made by other processes
    are bounded by the cache TTL instead.
    """

    def __init__(self, store: OverrideStore, cache: Optional[OverrideCache] = None):
        self._store = store
        self._cache = cache or OverrideCache()
        self._write_generation = 0
        self._generation_lock = Lock()

    @property
    def store(self) -> OverrideStore:
        return self._store

    def _bump_generation(self) -> None:
        with self._generation_lock:
            self._write_generation += 1

    def get(self, tenant_id, feature, now=None):
        found, override = self._cache.get(tenant_id, feature)
        if not found:
            generation = self._write_generation
            override = self._store.get(tenant_id, feature, now=now)
            with self._generation_lock:
                if generation == self._write_generation:
                    self._cache.set(tenant_id, feature, override)

        if override is None or override.is_expired(now or _utcnow()):
            return None
        return override

    def upsert(self, tenant_id, feature, granted, reason, granted_by, expires_at=None):
        self._bump_generation()
        try:
            self._store.upsert(tenant_id, feature, granted, reason, granted_by, expires_at)
        finally:
            self._bump_generation()
            self._cache.invalidate(tenant_id, feature)

    def delete(self, tenant_id, feature):
        self._bump_generation()
        try:
            return self._store.delete(tenant_id, feature)
        finally:
            self._bump_generation()
            self._cache.invalidate(tenant_id, feature)

    def list_for_tenant(self, tenant_id, include_expired=False, now=None):
        return self._store.list_for_tenant(tenant_id, include_expired=include_expired, now=now)

    def cleanup_expired(self, now=None):
        self._bump_generation()
        removed = self._store.cleanup_expired(now)
        if removed:
            self._cache.invalidate_all(reason="cleanup_expired")
        return removed
