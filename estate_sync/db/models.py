"""SQLAlchemy models for listings, reference data and investment analytics."""
from datetime import UTC, datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what DateTime columns round-trip."""
    return datetime.now(UTC).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class Region(Base):
    """City-level region taxonomy entry (reference data)."""
    __tablename__ = "regions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    region_type: Mapped[str] = mapped_column(String(20), nullable=False, default="city")
    timezone: Mapped[str] = mapped_column(String(50), nullable=False, default="Europe/Moscow")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<Region(id={self.id}, name='{self.name}')>"


class PriceTier(Base):
    """Price tier ("property class") defined by a [min, max) price-per-m² band."""
    __tablename__ = "price_tiers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    min_price_per_sqm: Mapped[int] = mapped_column(Integer, nullable=False)
    max_price_per_sqm: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)

    def contains(self, price_per_sqm: float) -> bool:
        return self.min_price_per_sqm <= price_per_sqm < self.max_price_per_sqm

    def __repr__(self) -> str:
        return (
            f"<PriceTier(name='{self.name}', "
            f"band=[{self.min_price_per_sqm}, {self.max_price_per_sqm}))>"
        )


class Listing(Base):
    """Listing accepted from the upstream feed."""
    __tablename__ = "listings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    external_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    region_id: Mapped[Optional[int]] = mapped_column(ForeignKey("regions.id"), index=True)
    price_tier_id: Mapped[Optional[int]] = mapped_column(ForeignKey("price_tiers.id"), index=True)

    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    price: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    price_per_sqm: Mapped[Optional[int]] = mapped_column(Integer)
    area: Mapped[Optional[float]] = mapped_column(Float)  # m²
    rooms: Mapped[Optional[int]] = mapped_column(Integer)
    floor: Mapped[Optional[int]] = mapped_column(Integer)
    total_floors: Mapped[Optional[int]] = mapped_column(Integer)

    # Location
    address: Mapped[str] = mapped_column(String(500), nullable=False)
    district: Mapped[Optional[str]] = mapped_column(String(255))
    lat: Mapped[Optional[float]] = mapped_column(Float)
    lng: Mapped[Optional[float]] = mapped_column(Float)

    property_type: Mapped[str] = mapped_column(String(50), nullable=False, default="apartment")
    market_segment: Mapped[str] = mapped_column(String(20), nullable=False, default="resale", index=True)
    source: Mapped[str] = mapped_column(String(50), nullable=False, default="ads-api.ru")
    url: Mapped[Optional[str]] = mapped_column(String(1000))
    images: Mapped[Optional[list]] = mapped_column(JSON)  # List of image URLs

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    # Relationships
    region: Mapped[Optional["Region"]] = relationship("Region")
    price_tier: Mapped[Optional["PriceTier"]] = relationship("PriceTier")
    price_history: Mapped[list["PriceHistory"]] = relationship(
        "PriceHistory", back_populates="listing", cascade="all, delete-orphan"
    )
    analytics: Mapped[Optional["InvestmentAnalytics"]] = relationship(
        "InvestmentAnalytics", back_populates="listing", cascade="all, delete-orphan", uselist=False
    )

    def __repr__(self) -> str:
        return f"<Listing(external_id='{self.external_id}', title='{self.title}', price={self.price})>"


class PriceHistory(Base):
    """Historical price observations for a listing."""
    __tablename__ = "price_history"
    __table_args__ = (
        UniqueConstraint("listing_id", "observed_at", name="uq_listing_price_observation"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    listing_id: Mapped[int] = mapped_column(
        ForeignKey("listings.id", ondelete="CASCADE"), nullable=False, index=True
    )
    price: Mapped[int] = mapped_column(Integer, nullable=False)
    price_per_sqm: Mapped[Optional[int]] = mapped_column(Integer)
    observed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, index=True)

    listing: Mapped["Listing"] = relationship("Listing", back_populates="price_history")

    def __repr__(self) -> str:
        return f"<PriceHistory(listing_id={self.listing_id}, price={self.price}, observed_at={self.observed_at})>"


class InvestmentAnalytics(Base):
    """Derived investment metrics for a listing, valid until ``expires_at``."""
    __tablename__ = "investment_analytics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    listing_id: Mapped[int] = mapped_column(
        ForeignKey("listings.id", ondelete="CASCADE"), unique=True, nullable=False, index=True
    )

    # Rental scenario
    rental_yield: Mapped[float] = mapped_column(Float, nullable=False)  # %
    rental_income_monthly: Mapped[int] = mapped_column(Integer, nullable=False)
    rental_expenses_annual: Mapped[int] = mapped_column(Integer, nullable=False)
    rental_roi_annual: Mapped[float] = mapped_column(Float, nullable=False)  # %
    rental_payback_years: Mapped[float] = mapped_column(Float, nullable=False)

    # Flip scenario
    flip_potential_profit: Mapped[int] = mapped_column(Integer, nullable=False)
    flip_roi: Mapped[float] = mapped_column(Float, nullable=False)  # %
    flip_timeframe_months: Mapped[int] = mapped_column(Integer, nullable=False)
    renovation_cost_estimate: Mapped[int] = mapped_column(Integer, nullable=False)

    # Safe-haven scenario
    price_volatility: Mapped[float] = mapped_column(Float, nullable=False)  # %
    capital_preservation_index: Mapped[float] = mapped_column(Float, nullable=False)
    safe_haven_score: Mapped[int] = mapped_column(Integer, nullable=False)  # 1-10
    liquidity_score: Mapped[float] = mapped_column(Float, nullable=False)  # 1-10

    price_forecast_3y: Mapped[float] = mapped_column(Float, nullable=False)  # %

    investment_rating: Mapped[str] = mapped_column(String(10), nullable=False)  # A+ .. C
    risk_level: Mapped[str] = mapped_column(String(20), nullable=False)  # low, moderate, high
    recommended_strategy: Mapped[str] = mapped_column(String(20), nullable=False)  # rental, flip, hold

    calculated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, index=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    listing: Mapped["Listing"] = relationship("Listing", back_populates="analytics")

    def is_fresh(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) < self.expires_at

    def __repr__(self) -> str:
        return (
            f"<InvestmentAnalytics(listing_id={self.listing_id}, "
            f"rating='{self.investment_rating}', risk='{self.risk_level}')>"
        )


class SyncRun(Base):
    """Metadata about orchestrator passes."""
    __tablename__ = "sync_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    run_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)  # 'full', 'sweep', 'manual'
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    # Statistics
    imported: Mapped[int] = mapped_column(Integer, default=0)
    updated: Mapped[int] = mapped_column(Integer, default=0)
    removed: Mapped[int] = mapped_column(Integer, default=0)
    analytics_computed: Mapped[int] = mapped_column(Integer, default=0)
    errors: Mapped[Optional[list]] = mapped_column(JSON)  # List of error messages

    def __repr__(self) -> str:
        return f"<SyncRun(run_id='{self.run_id}', kind='{self.kind}', started_at={self.started_at})>"


class SyncLease(Base):
    """Named lease used to keep one sync pass running across processes."""
    __tablename__ = "sync_leases"

    name: Mapped[str] = mapped_column(String(100), primary_key=True)
    holder: Mapped[str] = mapped_column(String(255), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    def __repr__(self) -> str:
        return f"<SyncLease(name='{self.name}', holder='{self.holder}', expires_at={self.expires_at})>"
