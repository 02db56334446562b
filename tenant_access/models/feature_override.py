"""
Persistent per-tenant feature overrides.

One row per (tenant_id, feature). Writes go through SqlOverrideStore,
which upserts on the unique constraint so concurrent writers for the
same key never produce duplicate or partial rows.
"""

from sqlalchemy import Column, String, Boolean, DateTime, Text, Index, UniqueConstraint

from tenant_access.db_base import Base
from tenant_access.models.base import TimestampMixin, as_utc, generate_uuid


class TenantFeatureOverride(Base, TimestampMixin):
    """
    Grant or revocation of a single feature for a single tenant.

    Takes precedence over the tier catalog default. expires_at is optional;
    an override without expiry stays in force until replaced or deleted.
    """

    __tablename__ = "tenant_feature_overrides"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Primary key (UUID)",
    )

    tenant_id = Column(
        String(255),
        nullable=False,
        index=True,
        comment="Tenant the override applies to",
    )

    feature = Column(
        String(255),
        nullable=False,
        index=True,
        comment="Feature id being overridden",
    )

    granted = Column(
        Boolean,
        nullable=False,
        comment="True = grant feature, False = revoke feature",
    )

    reason = Column(
        Text,
        nullable=False,
        default="",
        comment="Human-readable reason for the override",
    )

    granted_by = Column(
        String(255),
        nullable=False,
        comment="Actor that last wrote the override",
    )

    expires_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Optional expiry, override is ignored after this instant",
    )

    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "feature",
            name="uq_tenant_feature_override",
        ),
        Index(
            "idx_tenant_feature_overrides_expiry",
            "expires_at",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<TenantFeatureOverride("
            f"tenant_id={self.tenant_id}, "
            f"feature={self.feature}, "
            f"granted={self.granted}"
            f")>"
        )

    def to_domain(self):
        """Convert to the immutable FeatureOverride value object."""
        from tenant_access.entitlements.models import FeatureOverride

        return FeatureOverride(
            tenant_id=self.tenant_id,
            feature=self.feature,
            granted=bool(self.granted),
            reason=self.reason or "",
            granted_by=self.granted_by,
            updated_at=as_utc(self.updated_at),
            expires_at=as_utc(self.expires_at),
        )
