"""Tests for the import / sweep / analytics pipeline."""

from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from estate_sync.analysis.engine import AnalyticsEngine
from estate_sync.db.models import InvestmentAnalytics, Listing, PriceHistory
from estate_sync.db.storage import ListingStore
from estate_sync.errors import FeedRequestError, PersistenceError, TransientFeedError
from estate_sync.sync import RESYNC_CREATE_ONLY, RESYNC_UPSERT, SyncPipeline
from tests.conftest import IMAGES, FakeSource, make_raw


def count(session, model):
    return session.execute(select(func.count()).select_from(model)).scalar()


def moscow_raws(*ids, **kwargs):
    return [make_raw(listing_id=listing_id, **kwargs) for listing_id in ids]


def pipeline(session, source, **kwargs):
    kwargs.setdefault("allowed_cities", ["Moscow", "Kazan"])
    kwargs.setdefault("engine", AnalyticsEngine(session, volatility_source=lambda: 10.0))
    return SyncPipeline(session, source, **kwargs)


class TestImport:
    def test_creates_listings(self, db_session):
        source = FakeSource({"Москва": moscow_raws("1", "2", "3")})
        summary = pipeline(db_session, source).run_import()

        assert summary.fetched == 3
        assert summary.imported == 3
        assert summary.errors == []
        assert count(db_session, Listing) == 3
        assert count(db_session, PriceHistory) == 3

    def test_queries_feed_with_city_names(self, db_session):
        source = FakeSource({})
        pipeline(db_session, source, page_limit=100).run_import()

        assert [f.city for f in source.calls] == ["Москва", "Казань"]
        assert all(f.limit == 100 for f in source.calls)

    def test_unknown_allowed_city_skipped(self, db_session):
        source = FakeSource({})
        pipeline(db_session, source, allowed_cities=["Moscow", "Atlantis"]).run_import()
        assert [f.city for f in source.calls] == ["Москва"]

    def test_repeat_import_creates_no_duplicates(self, db_session):
        source = FakeSource({"Москва": moscow_raws("1", "2", "3")})
        pipeline(db_session, source).run_import()
        summary = pipeline(db_session, source).run_import()

        assert summary.imported == 0
        assert summary.updated == 0
        assert count(db_session, Listing) == 3
        assert count(db_session, PriceHistory) == 3

    def test_upsert_refreshes_known_listing(self, db_session):
        pipeline(db_session, FakeSource({"Москва": moscow_raws("1", "2", "3")})).run_import()

        changed = moscow_raws("2", "3") + [make_raw(listing_id="1", price=8_800_000)]
        summary = pipeline(db_session, FakeSource({"Москва": changed}), resync_mode=RESYNC_UPSERT).run_import()

        assert summary.updated == 1
        assert ListingStore(db_session).get_by_external_id("1").price == 8_800_000
        assert count(db_session, PriceHistory) == 4

    def test_create_only_skips_known_listing(self, db_session):
        pipeline(db_session, FakeSource({"Москва": moscow_raws("1")})).run_import()

        changed = [make_raw(listing_id="1", price=8_800_000), make_raw(listing_id="2")]
        summary = pipeline(
            db_session, FakeSource({"Москва": changed}), resync_mode=RESYNC_CREATE_ONLY
        ).run_import()

        assert summary.skipped == 1
        assert summary.imported == 1
        assert ListingStore(db_session).get_by_external_id("1").price == 8_500_000

    def test_bad_records_do_not_stop_batch(self, db_session):
        raws = [
            make_raw(listing_id="1"),
            make_raw(listing_id="2", title="Продам дом 120 м²", cat2="Дома, дачи, коттеджи"),
            make_raw(listing_id="3", city="Тверь"),
            make_raw(listing_id="4"),
        ]
        summary = pipeline(db_session, FakeSource({"Москва": raws})).run_import()

        assert summary.imported == 2
        assert len(summary.errors) == 2
        assert summary.errors[0].startswith("2:")
        assert summary.errors[1].startswith("3:")

    def test_gate_rejections_counted_not_stored(self, db_session):
        raws = [make_raw(listing_id="1"), make_raw(listing_id="2", title="Сдам 2-к квартиру на длительный срок")]
        summary = pipeline(db_session, FakeSource({"Москва": raws})).run_import()

        assert summary.imported == 1
        assert summary.rejected == 1
        assert summary.errors == []
        assert ListingStore(db_session).get_by_external_id("2") is None

    def test_persistence_error_recorded(self, db_session):
        sync = pipeline(db_session, FakeSource({"Москва": moscow_raws("1", "2")}))
        real_create = sync.store.create_listing

        def flaky_create(listing):
            if listing.external_id == "1":
                raise PersistenceError("disk full")
            return real_create(listing)

        with patch.object(sync.store, "create_listing", side_effect=flaky_create):
            summary = sync.run_import()

        assert summary.imported == 1
        assert summary.errors == ["1: disk full"]

    @pytest.mark.parametrize("error", [TransientFeedError("timeout"), FeedRequestError("bad token", 403)])
    def test_feed_error_aborts_only_that_region(self, db_session, error):
        source = FakeSource({"Москва": moscow_raws("1", "2"), "Казань": error})
        summary = pipeline(db_session, source).run_import()

        assert summary.imported == 2
        assert len(summary.errors) == 1
        assert summary.errors[0].startswith("Kazan")

    def test_unknown_resync_mode(self, db_session):
        with pytest.raises(ValueError):
            pipeline(db_session, FakeSource({}), resync_mode="replace")


class TestSweep:
    def test_removes_rejected_with_dependents(self, db_session):
        sync = pipeline(db_session, FakeSource({"Москва": moscow_raws("1", "2")}))
        sync.run_full_pass()
        assert count(db_session, InvestmentAnalytics) == 2

        stale = ListingStore(db_session).get_by_external_id("1")
        stale.images = [IMAGES[0]]
        db_session.commit()

        summary = sync.run_sweep_pass()

        assert summary.removed == 1
        assert summary.finished_at is not None
        assert [listing.external_id for listing in ListingStore(db_session).list_listings()] == ["2"]
        assert count(db_session, InvestmentAnalytics) == 1
        assert count(db_session, PriceHistory) == 1

    def test_valid_listings_kept(self, db_session):
        sync = pipeline(db_session, FakeSource({"Москва": moscow_raws("1", "2")}))
        sync.run_import()
        assert sync.sweep().removed == 0
        assert count(db_session, Listing) == 2

    def test_region_dropped_from_whitelist(self, db_session):
        source = FakeSource({"Москва": moscow_raws("1"), "Казань": [make_raw(listing_id="k1", city="Казань")]})
        pipeline(db_session, source).run_import()

        summary = pipeline(db_session, source, allowed_cities=["Moscow"]).sweep()

        assert summary.removed == 1
        assert ListingStore(db_session).get_by_external_id("k1") is None


class TestFullPass:
    def test_imports_sweeps_and_computes_analytics(self, db_session):
        source = FakeSource({"Москва": moscow_raws("1", "2"), "Казань": [make_raw(listing_id="k1", city="Казань")]})
        summary = pipeline(db_session, source).run_full_pass()

        assert summary.kind == "full"
        assert summary.imported == 3
        assert summary.removed == 0
        assert summary.analytics_computed == 3
        assert summary.finished_at is not None
        assert not summary.cancelled
        assert count(db_session, InvestmentAnalytics) == 3

    def test_stops_at_item_boundary(self, db_session):
        checks = []

        def should_stop():
            checks.append(1)
            return len(checks) >= 3

        source = FakeSource({"Москва": moscow_raws("1", "2", "3")})
        summary = pipeline(db_session, source, allowed_cities=["Moscow"], should_stop=should_stop).run_full_pass()

        assert summary.cancelled
        assert summary.imported == 1
        assert summary.analytics_computed == 0
        assert count(db_session, Listing) == 1

    def test_summary_dict(self, db_session):
        summary = pipeline(db_session, FakeSource({})).run_full_pass("manual")
        data = summary.to_dict()

        assert data["kind"] == "manual"
        assert data["imported"] == 0
        assert data["errors"] == []
        assert data["duration_seconds"] >= 0
