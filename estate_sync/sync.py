"""Sync pipeline: import from the feed, re-validate stored listings, refresh analytics.

One pass runs three stages:
1. Import: for every allowed region fetch raw listings, convert, gate and persist
2. Sweep: run every active stored listing through the gate, delete rejections
3. Analytics: recompute investment metrics for every active listing

Errors are handled per item. A conversion failure, gate rejection or storage
error for one record is recorded in the summary and the batch continues; a
feed failure aborts only the current region.

Example usage:
    from estate_sync.db import get_session_factory
    from estate_sync.feed import FeedClient
    from estate_sync.sync import SyncPipeline

    with get_session_factory()() as session, FeedClient() as client:
        summary = SyncPipeline(session, client).run_full_pass()
        print(summary.to_dict())
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from estate_sync.analysis.engine import BATCH_OK, AnalyticsEngine
from estate_sync.config import settings
from estate_sync.db.models import utcnow
from estate_sync.db.storage import ListingStore
from estate_sync.errors import ConversionError, FeedError, PersistenceError
from estate_sync.feed.base import FeedFilter, ListingSource
from estate_sync.mapping import RegionMapper, feed_city_name
from estate_sync.validation.converters import convert
from estate_sync.validation.gate import ValidationGate

logger = logging.getLogger(__name__)

RESYNC_UPSERT = "upsert"
RESYNC_CREATE_ONLY = "create_only"
RESYNC_MODES = (RESYNC_UPSERT, RESYNC_CREATE_ONLY)


@dataclass
class SyncSummary:
    """Counters and per-item errors of one sync pass."""

    kind: str = "full"
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    fetched: int = 0
    imported: int = 0
    updated: int = 0
    skipped: int = 0
    rejected: int = 0
    removed: int = 0
    analytics_computed: int = 0
    errors: List[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def duration_seconds(self) -> float:
        end = self.finished_at or utcnow()
        return (end - self.started_at).total_seconds()

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": self.duration_seconds,
            "fetched": self.fetched,
            "imported": self.imported,
            "updated": self.updated,
            "skipped": self.skipped,
            "rejected": self.rejected,
            "removed": self.removed,
            "analytics_computed": self.analytics_computed,
            "errors": list(self.errors),
            "cancelled": self.cancelled,
        }


def _never_stop() -> bool:
    return False


class SyncPipeline:
    """Runs the import, sweep and analytics stages against one session.

    Args:
        session: Database session used for every stage
        source: Feed to pull raw listings from
        resync_mode: "upsert" refreshes known listings, "create_only" skips them
        allowed_cities: Regions to import and keep (defaults to settings)
        should_stop: Polled between items; True ends the pass early
        engine: Analytics engine (created on the session if None)
    """

    def __init__(
        self,
        session: Session,
        source: ListingSource,
        resync_mode: Optional[str] = None,
        allowed_cities: Optional[List[str]] = None,
        should_stop: Callable[[], bool] = _never_stop,
        engine: Optional[AnalyticsEngine] = None,
        page_limit: Optional[int] = None,
        max_pages: Optional[int] = None,
    ):
        self.session = session
        self.source = source
        self.store = ListingStore(session)
        self.resync_mode = resync_mode or settings.resync_mode
        if self.resync_mode not in RESYNC_MODES:
            raise ValueError(f"Unknown resync mode: {self.resync_mode}")

        self.allowed_cities = (
            allowed_cities if allowed_cities is not None else settings.allowed_city_list
        )
        self.should_stop = should_stop
        self.engine = engine or AnalyticsEngine(session)
        self.page_limit = page_limit or settings.feed_page_limit
        self.max_pages = max_pages or settings.feed_max_pages

        self.mapper = RegionMapper.from_session(session)
        self.gate = ValidationGate(self.store, self.mapper, self.allowed_cities)

    def _stopped(self, summary: SyncSummary) -> bool:
        if summary.cancelled:
            return True
        if self.should_stop():
            logger.warning(f"Sync pass ({summary.kind}) stopping early")
            summary.cancelled = True
            return True
        return False

    def _target_regions(self) -> List[str]:
        known = {name.lower(): name for name in self.mapper.region_names.values()}
        targets = []
        for city in self.allowed_cities:
            name = known.get(city.lower())
            if name is None:
                logger.warning(f"Allowed city {city!r} is not a known region, skipping")
                continue
            targets.append(name)
        return targets

    # Stage 1: import

    def import_region(self, region_name: str, summary: SyncSummary) -> None:
        """Fetch, convert, gate and persist listings for one region."""
        feed_filter = FeedFilter(city=feed_city_name(region_name), limit=self.page_limit)
        try:
            raw_listings = self.source.fetch_all(feed_filter, max_pages=self.max_pages)
        except FeedError as e:
            message = f"{region_name}: feed request failed: {e}"
            logger.error(message)
            summary.errors.append(message)
            return

        summary.fetched += len(raw_listings)
        logger.info(f"Processing {len(raw_listings)} raw listings for {region_name}")

        for raw in raw_listings:
            if self._stopped(summary):
                return

            try:
                listing = convert(raw, self.mapper)
            except ConversionError as e:
                summary.errors.append(f"{e.external_id or '?'}: {e}")
                continue

            result = self.gate.evaluate(listing)
            if not result.accepted:
                summary.rejected += 1
                continue

            try:
                existing = self.store.get_by_external_id(listing.external_id)
                if existing is None:
                    self.store.create_listing(listing)
                    summary.imported += 1
                elif self.resync_mode == RESYNC_UPSERT:
                    if self.store.update_listing(existing, listing):
                        summary.updated += 1
                else:
                    summary.skipped += 1
            except PersistenceError as e:
                logger.warning(str(e))
                summary.errors.append(f"{listing.external_id}: {e}")

    def run_import(self, summary: Optional[SyncSummary] = None) -> SyncSummary:
        summary = summary or SyncSummary(kind="import")
        regions = self._target_regions()
        logger.info(f"Importing {len(regions)} regions: {', '.join(regions)}")

        for region_name in regions:
            if self._stopped(summary):
                break
            self.import_region(region_name, summary)

        logger.info(
            f"Import finished: {summary.imported} new, {summary.updated} updated, "
            f"{summary.skipped} unchanged, {summary.rejected} rejected, {len(summary.errors)} errors"
        )
        return summary

    # Stage 2: sweep

    def sweep(self, summary: Optional[SyncSummary] = None) -> SyncSummary:
        """Re-validate every active listing and delete the ones the gate rejects."""
        summary = summary or SyncSummary(kind="sweep")
        listings = self.store.list_listings()
        logger.info(f"Sweeping {len(listings)} active listings")

        for listing in listings:
            if self._stopped(summary):
                break

            result = self.gate.evaluate(listing)
            if result.accepted:
                continue

            try:
                if self.store.delete_listing(listing.id):
                    summary.removed += 1
            except PersistenceError as e:
                logger.warning(str(e))
                summary.errors.append(f"{listing.external_id}: {e}")

        logger.info(f"Sweep finished: {summary.removed} listings removed")
        return summary

    # Stage 3: analytics

    def recompute_analytics(self, summary: Optional[SyncSummary] = None) -> SyncSummary:
        summary = summary or SyncSummary(kind="analytics")
        listing_ids = [listing.id for listing in self.store.list_listings()]

        results = self.engine.calculate_batch(
            listing_ids, should_stop=lambda: self._stopped(summary)
        )
        for listing_id, status in results.items():
            if status == BATCH_OK:
                summary.analytics_computed += 1
            else:
                summary.errors.append(f"analytics {listing_id}: {status}")
        return summary

    def run_full_pass(self, kind: str = "full") -> SyncSummary:
        """Import, sweep and recompute analytics in one pass."""
        summary = SyncSummary(kind=kind)
        logger.info(f"Starting {kind} sync pass (resync mode: {self.resync_mode})")

        self.run_import(summary)
        if not summary.cancelled:
            self.sweep(summary)
        if not summary.cancelled:
            self.recompute_analytics(summary)

        summary.finished_at = utcnow()
        logger.info(
            f"Sync pass finished in {summary.duration_seconds:.1f}s: "
            f"{summary.imported} imported, {summary.updated} updated, "
            f"{summary.removed} removed, {summary.analytics_computed} analytics, "
            f"{len(summary.errors)} errors"
        )
        return summary

    def run_sweep_pass(self) -> SyncSummary:
        summary = self.sweep(SyncSummary(kind="sweep"))
        summary.finished_at = utcnow()
        return summary
