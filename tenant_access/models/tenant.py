"""
Tenant model.

The subscription columns are written by the billing and admin flows.
The access engine only reads them (see Tenant.to_record).
"""

from sqlalchemy import Column, String, DateTime

from tenant_access.db_base import Base
from tenant_access.models.base import TimestampMixin, as_utc


class Tenant(Base, TimestampMixin):
    """A billed customer account."""

    __tablename__ = "tenants"

    id = Column(String(255), primary_key=True, comment="Tenant identifier")
    name = Column(String(255), nullable=False, default="", comment="Display name")

    subscription_status = Column(
        String(50),
        nullable=False,
        default="trial",
        comment="Raw billing signal: trial, active, past_due, canceled, expired",
    )
    subscription_tier = Column(
        String(50),
        nullable=False,
        default="starter",
        comment="Tier id from the tier catalog",
    )
    trial_ends_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="End of trial, or end of the maintenance window after auto-downgrade",
    )
    subscription_ends_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Hard expiry of the paid term",
    )

    def __repr__(self) -> str:
        return (
            f"<Tenant(id={self.id}, tier={self.subscription_tier}, "
            f"status={self.subscription_status})>"
        )

    def to_record(self):
        """Convert to the immutable record consumed by the access engine."""
        from tenant_access.entitlements.models import TenantRecord

        return TenantRecord(
            id=self.id,
            subscription_status=self.subscription_status,
            subscription_tier=self.subscription_tier,
            trial_ends_at=as_utc(self.trial_ends_at),
            subscription_ends_at=as_utc(self.subscription_ends_at),
        )
