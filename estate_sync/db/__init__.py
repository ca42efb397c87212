"""Database layer: models, session management, seeding and the storage API."""
from estate_sync.db.lease import acquire_lease, release_lease
from estate_sync.db.models import (
    Base,
    InvestmentAnalytics,
    Listing,
    PriceHistory,
    PriceTier,
    Region,
    SyncLease,
    SyncRun,
)
from estate_sync.db.seed import seed_reference_data
from estate_sync.db.session import (
    clear_db,
    get_db,
    get_engine,
    get_session_factory,
    init_db,
    reset_engine,
)
from estate_sync.db.storage import ListingFilters, ListingStore

__all__ = [
    # Models
    "Base",
    "Region",
    "PriceTier",
    "Listing",
    "PriceHistory",
    "InvestmentAnalytics",
    "SyncRun",
    "SyncLease",
    # Session management
    "get_engine",
    "get_session_factory",
    "get_db",
    "init_db",
    "clear_db",
    "reset_engine",
    # Storage
    "ListingStore",
    "ListingFilters",
    "seed_reference_data",
    "acquire_lease",
    "release_lease",
]
