"""Tests for the concrete backends: filesystem storage, SQLite store, region providers."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import Mock, patch

import httpx
import pytest

from conftest import seed_rules
from techkpi_ingest.backends.filesystem import FileSystemObjectStorage
from techkpi_ingest.backends.regions import HttpRegionProvider, StaticRegionProvider
from techkpi_ingest.backends.sqlite import SQLiteIngestStore
from techkpi_ingest.config import IngestConfig
from techkpi_ingest.models import BatchPin, BatchStatus, RawRow, RubricBand
from techkpi_ingest.protocols import IngestStore, ObjectStorage, RegionProvider


def _make_config(**overrides) -> IngestConfig:
    defaults = {"backend_max_retries": 1, "backend_backoff_base": 0.0}
    defaults.update(overrides)
    return IngestConfig(**defaults)


def _make_row(batch_id: str, tech_id: str = "T1", region: str | None = "Keystone") -> RawRow:
    return RawRow(
        batch_id=batch_id,
        source_file="Keystone.xlsx",
        sheet_name="Report",
        row_num=3,
        tech_id=tech_id,
        region=region,
        payload={"TechId": tech_id, "TechName": "Jane"},
    )


# ===========================================================================
# TestFileSystemObjectStorage
# ===========================================================================


class TestFileSystemObjectStorage:
    @pytest.fixture()
    def fs(self, tmp_path) -> FileSystemObjectStorage:
        return FileSystemObjectStorage(str(tmp_path), bucket="test-bucket")

    @pytest.mark.unit
    def test_satisfies_protocol(self, fs) -> None:
        assert isinstance(fs, ObjectStorage)

    @pytest.mark.unit
    def test_put_then_get(self, fs) -> None:
        fs.put("ontrac/2025-01-21/u1/a.xlsx", b"data")
        assert fs.get("ontrac/2025-01-21/u1/a.xlsx") == b"data"

    @pytest.mark.unit
    def test_get_missing_raises(self, fs) -> None:
        with pytest.raises(FileNotFoundError):
            fs.get("nope/a.xlsx")

    @pytest.mark.unit
    def test_list_direct_children_sorted(self, fs) -> None:
        fs.put("p/b.xlsx", b"22")
        fs.put("p/a.csv", b"1")
        fs.put("p/sub/c.xlsx", b"333")
        listing = fs.list("p")
        assert [(o.name, o.size) for o in listing] == [("a.csv", 1), ("b.xlsx", 2)]

    @pytest.mark.unit
    def test_list_limit_and_missing_prefix(self, fs) -> None:
        fs.put("p/a", b"")
        fs.put("p/b", b"")
        assert len(fs.list("p", limit=1)) == 1
        assert fs.list("missing") == []

    @pytest.mark.unit
    def test_delete(self, fs) -> None:
        fs.put("p/a", b"x")
        assert fs.delete("p/a") is True
        assert fs.delete("p/a") is False

    @pytest.mark.unit
    def test_rejects_relative_segments(self, fs) -> None:
        with pytest.raises(ValueError):
            fs.put("../escape", b"x")


# ===========================================================================
# TestSQLiteIngestStore
# ===========================================================================


class TestSQLiteIngestStore:
    @pytest.mark.unit
    def test_satisfies_protocol(self, store) -> None:
        assert isinstance(store, IngestStore)

    @pytest.mark.unit
    def test_upsert_batch_keeps_batch_id(self, store) -> None:
        first = store.upsert_batch("u1", "ontrac", "2025-01-21", "committing")
        second = store.upsert_batch("u1", "ontrac", "2025-01-21", "committing")
        assert first.batch_id == second.batch_id
        assert second.status == BatchStatus.COMMITTING
        assert len(store.list_batches("2025-01-21")) == 1

    @pytest.mark.unit
    def test_update_batch(self, store) -> None:
        batch = store.upsert_batch("u1", "ontrac", "2025-01-21", "committing")
        updated = store.update_batch(
            batch.batch_id, status=BatchStatus.COMMITTED, note="ok", manifest_path="m.json"
        )
        assert updated.status == BatchStatus.COMMITTED
        assert updated.note == "ok"
        assert updated.manifest_path == "m.json"

    @pytest.mark.unit
    def test_update_unknown_field_rejected(self, store) -> None:
        batch = store.upsert_batch("u1", "ontrac", "2025-01-21", "committing")
        with pytest.raises(ValueError):
            store.update_batch(batch.batch_id, upload_set_id="other")

    @pytest.mark.unit
    def test_update_missing_batch_raises(self, store) -> None:
        with pytest.raises(RuntimeError):
            store.update_batch("missing", note="x")

    @pytest.mark.unit
    def test_list_batches_filters_status(self, store) -> None:
        a = store.upsert_batch("u1", "ontrac", "2025-01-21", "committing")
        store.upsert_batch("u2", "ontrac", "2025-01-21", "committing")
        store.update_batch(a.batch_id, status=BatchStatus.COMMITTED)
        committed = store.list_batches("2025-01-21", statuses=["committed"])
        assert [b.batch_id for b in committed] == [a.batch_id]

    @pytest.mark.unit
    def test_raw_rows_round_trip_preserves_payload_order(self, store) -> None:
        row = _make_row("b1")
        row.payload = {"Z": "1", "A": "2"}
        store.insert_raw_rows([row])
        (stored,) = store.select_raw_rows(batch_ids=["b1"])
        assert list(stored.payload) == ["Z", "A"]
        assert store.count_raw_rows("b1") == 1

    @pytest.mark.unit
    def test_select_with_empty_batch_list(self, store) -> None:
        store.insert_raw_rows([_make_row("b1")])
        assert store.select_raw_rows(batch_ids=[]) == []

    @pytest.mark.unit
    def test_delete_superseded_rows_scoped_by_month_and_source(self, store) -> None:
        old = store.upsert_batch("u-old", "ontrac", "2025-01-21", "committed")
        new = store.upsert_batch("u-new", "ontrac", "2025-01-21", "committing")
        other_month = store.upsert_batch("u-feb", "ontrac", "2025-02-21", "committed")
        store.insert_raw_rows(
            [
                _make_row(old.batch_id),
                _make_row(old.batch_id, region="Beltway"),
                _make_row(new.batch_id),
                _make_row(other_month.batch_id),
            ]
        )
        deleted = store.delete_superseded_rows("Keystone", "2025-01-21", "ontrac", new.batch_id)
        assert deleted == 1
        assert store.count_raw_rows(old.batch_id) == 1
        assert store.count_raw_rows(new.batch_id) == 1
        assert store.count_raw_rows(other_month.batch_id) == 1

    @pytest.mark.unit
    def test_rubric_versions_ordered_newest_anchor_first(self, store) -> None:
        seed_rules(store, anchor="2025-01-21")
        later = seed_rules(store, anchor="2025-06-21")
        future = seed_rules(store, anchor="2026-01-21")
        versions = store.list_rubric_versions("global", "ontrac", as_of="2025-12-21")
        assert versions[0].id == later
        assert future not in [v.id for v in versions]

    @pytest.mark.unit
    def test_inactive_versions_excluded(self, store) -> None:
        store.add_rubric_version("global", "ontrac", "2025-01-21", active=False)
        assert store.list_rubric_versions("global", "ontrac", as_of="2025-12-21") == []

    @pytest.mark.unit
    def test_thresholds_round_trip(self, store) -> None:
        version_id = seed_rules(store)
        thresholds = store.get_rubric_thresholds(version_id)
        assert len(thresholds) == 5
        meet = next(t for t in thresholds if t.band == RubricBand.MEET)
        assert meet.min_value == 80.0
        assert meet.inclusive_max is False

    @pytest.mark.unit
    def test_settings_append_only_latest_wins(self, store) -> None:
        t1 = datetime(2025, 1, 1, tzinfo=timezone.utc)
        t2 = datetime(2025, 2, 1, tzinfo=timezone.utc)
        store.record_settings("global", "ontrac", {"v": 1}, updated_at=t1)
        store.record_settings("global", "ontrac", {"v": 2}, updated_at=t2)
        assert store.latest_settings("global", "ontrac").values == {"v": 2}
        assert store.get_settings_at("global", "ontrac", t1).values == {"v": 1}

    @pytest.mark.unit
    def test_pin_upsert_get_delete(self, store) -> None:
        now = datetime(2025, 1, 5, tzinfo=timezone.utc)
        pin = BatchPin(
            batch_id="b1",
            scope="global",
            source_system="ontrac",
            fiscal_month_anchor="2025-01-21",
            rubric_version_id=1,
            settings_pinned_at=now,
            pinned_at=now,
        )
        store.upsert_pin(pin)
        store.upsert_pin(pin.model_copy(update={"rubric_version_id": 2}))
        assert store.get_pin("b1").rubric_version_id == 2
        assert store.get_pin("b1").settings_pinned_at == now
        assert store.delete_pin("b1") == 1
        assert store.delete_pin("b1") == 0
        assert store.get_pin("b1") is None

    @pytest.mark.unit
    def test_upsert_batch_moves_month_and_source(self, store) -> None:
        first = store.upsert_batch("u1", "ontrac", "2025-03-21", "committing")
        moved = store.upsert_batch("u1", "ontrac_v2", "2025-04-21", "committing")
        assert moved.batch_id == first.batch_id
        assert moved.fiscal_month_anchor == "2025-04-21"
        assert moved.source_system == "ontrac_v2"
        assert store.list_batches("2025-03-21") == []

    @pytest.mark.unit
    def test_file_database_persists(self, tmp_path) -> None:
        path = str(tmp_path / "ingest.db")
        db = SQLiteIngestStore(path)
        db.upsert_batch("u1", "ontrac", "2025-01-21", "committing")
        db.close()
        reopened = SQLiteIngestStore(path)
        assert reopened.get_batch("u1") is not None
        reopened.close()


# ===========================================================================
# TestRegionProviders
# ===========================================================================


class TestStaticRegionProvider:
    @pytest.mark.unit
    def test_returns_trimmed_names(self) -> None:
        provider = StaticRegionProvider([" Keystone ", "", "Beltway"])
        assert isinstance(provider, RegionProvider)
        assert provider.authoritative_regions() == ["Keystone", "Beltway"]


class TestHttpRegionProvider:
    """Tests for HttpRegionProvider using mocked httpx."""

    @pytest.fixture()
    def config(self) -> IngestConfig:
        return _make_config()

    @staticmethod
    def _response(payload) -> Mock:
        resp = Mock()
        resp.status_code = 200
        resp.raise_for_status = Mock()
        resp.json = Mock(return_value=payload)
        return resp

    @pytest.mark.unit
    def test_plain_list(self, config) -> None:
        with patch("httpx.get", return_value=self._response(["Keystone", "Beltway"])) as mock_get:
            provider = HttpRegionProvider("http://ref/regions", config=config)
            assert provider.authoritative_regions() == ["Keystone", "Beltway"]
        assert mock_get.call_args[0][0] == "http://ref/regions"

    @pytest.mark.unit
    def test_object_shapes(self, config) -> None:
        payload = {"regions": [{"name": "Florida"}, {"region": "Freedom"}, {"name": ""}]}
        with patch("httpx.get", return_value=self._response(payload)):
            provider = HttpRegionProvider("http://ref/regions", config=config)
            assert provider.authoritative_regions() == ["Florida", "Freedom"]

    @pytest.mark.unit
    def test_retries_then_succeeds(self, config) -> None:
        ok = self._response(["Keystone"])
        with patch("httpx.get", side_effect=[httpx.ConnectError("refused"), ok]) as mock_get:
            provider = HttpRegionProvider("http://ref/regions", config=config)
            assert provider.authoritative_regions() == ["Keystone"]
        assert mock_get.call_count == 2

    @pytest.mark.unit
    def test_timeout_raises_timeout_error(self, config) -> None:
        with patch("httpx.get", side_effect=httpx.TimeoutException("timeout")):
            provider = HttpRegionProvider("http://ref/regions", config=config)
            with pytest.raises(TimeoutError, match="timed out"):
                provider.authoritative_regions()

    @pytest.mark.unit
    def test_connection_error_raises_connection_error(self, config) -> None:
        with patch("httpx.get", side_effect=httpx.ConnectError("refused")):
            provider = HttpRegionProvider("http://ref/regions", config=config)
            with pytest.raises(ConnectionError, match="failed"):
                provider.authoritative_regions()

    @pytest.mark.unit
    def test_unexpected_payload_raises(self, config) -> None:
        with patch("httpx.get", return_value=self._response("Keystone")):
            provider = HttpRegionProvider("http://ref/regions", config=config)
            with pytest.raises(ConnectionError):
                provider.authoritative_regions()

    @pytest.mark.unit
    def test_non_json_body_raises_connection_error(self, config) -> None:
        reply = httpx.Response(
            200,
            text="<html>maintenance</html>",
            request=httpx.Request("GET", "http://ref/regions"),
        )
        with patch("httpx.get", return_value=reply) as mock_get:
            provider = HttpRegionProvider("http://ref/regions", config=config)
            with pytest.raises(ConnectionError, match="non-JSON"):
                provider.authoritative_regions()
        assert mock_get.call_count == 1

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "error",
        [httpx.ReadError("reset by peer"), httpx.RemoteProtocolError("bad frame")],
    )
    def test_transport_errors_raise_connection_error(self, config, error) -> None:
        with patch("httpx.get", side_effect=error) as mock_get:
            provider = HttpRegionProvider("http://ref/regions", config=config)
            with pytest.raises(ConnectionError, match="after 2 attempts"):
                provider.authoritative_regions()
        assert mock_get.call_count == 2
