import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from oemcatalog.models import CatalogRecord, CatalogStore, name_key, normalize_part_number
from oemcatalog.upsert import CatalogUpserter


def _record(**overrides) -> CatalogRecord:
    values = dict(
        make="Ski-Doo",
        model="MXZ TNT 600",
        year=2015,
        assembly="Engine",
        part_number="420891120",
        part_name="Piston",
        quantity=2,
        position="1",
        source_url="https://www.example.com/catalog/ski-doo/snowmobile/2015/mxz-tnt-600/engine",
    )
    values.update(overrides)
    return CatalogRecord(**values)


def _page() -> list[CatalogRecord]:
    return [
        _record(),
        _record(part_number="420 891 121", part_name="Ring", quantity=4, position="2"),
        _record(assembly="Crankshaft", part_number="420891120"),
        _record(year=2016, assembly="Engine", part_number="420891130"),
    ]


def test_repeated_merge_creates_no_new_rows(store):
    upserter = CatalogUpserter(store)

    first = upserter.merge(_page())
    counts_after_first = store.table_counts()
    second = upserter.merge(_page())

    assert first.merged == 4 and first.failed == 0
    assert store.table_counts() == counts_after_first
    assert sum(second.created.values()) == 0
    assert sum(second.updated.values()) == 0
    assert second.unchanged["oem_assembly_parts"] == 4
    assert counts_after_first == {
        "oem_makes": 1,
        "oem_models": 1,
        "oem_model_years": 2,
        "oem_assemblies": 3,
        "oem_parts": 3,
        "oem_assembly_parts": 4,
    }


def test_part_shared_between_assemblies_is_one_part_row(store):
    CatalogUpserter(store).merge([_record(assembly="Engine"), _record(assembly="Crankshaft")])

    assert store.table_counts()["oem_parts"] == 1
    assert store.table_counts()["oem_assembly_parts"] == 2


def test_natural_keys_are_normalized(store):
    upserter = CatalogUpserter(store)
    upserter.merge([_record(make="Ski-Doo", model="MXZ  TNT 600", part_number="420891120")])
    result = upserter.merge([_record(make="  ski-doo ", model="mxz tnt 600", part_number=" 420 891 120 ")])

    assert sum(result.created.values()) == 0
    assert store.table_counts()["oem_makes"] == 1
    row = store.conn.execute("SELECT name FROM oem_makes").fetchone()
    assert row["name"] == "Ski-Doo"


def test_bad_record_is_skipped_and_siblings_merge(store):
    records = [
        _record(part_number="A1"),
        _record(part_number="   "),
        _record(year="20x5", part_number="A2"),
        _record(year=1850, part_number="A3"),
        _record(part_number="A4"),
    ]

    result = CatalogUpserter(store).merge(records)

    assert result.merged == 2
    assert result.failed == 3
    assert len(result.errors) == 3
    parts = {r["part_number"] for r in store.conn.execute("SELECT part_number FROM oem_parts")}
    assert parts == {"A1", "A4"}


def test_changed_attributes_are_refreshed(store):
    upserter = CatalogUpserter(store)
    upserter.merge([_record(quantity=2, part_name="Piston")])

    result = upserter.merge([_record(quantity=3, part_name="Piston Kit")])

    assert result.updated["oem_assembly_parts"] == 1
    assert result.updated["oem_parts"] == 1
    assert result.unchanged["oem_makes"] == 1
    row = store.conn.execute("SELECT quantity FROM oem_assembly_parts").fetchone()
    assert row["quantity"] == 3


def test_missing_attributes_do_not_blank_existing_values(store):
    upserter = CatalogUpserter(store)
    upserter.merge([_record(part_name="Piston", quantity=2)])

    result = upserter.merge([_record(part_name=None, quantity=None, position=None)])

    assert sum(result.updated.values()) == 0
    row = store.conn.execute("SELECT name FROM oem_parts").fetchone()
    assert row["name"] == "Piston"


def test_no_orphans_after_merge(store):
    CatalogUpserter(store).merge(_page())

    orphans = store.conn.execute(
        """
        SELECT COUNT(*) FROM oem_assembly_parts ap
        LEFT JOIN oem_assemblies a ON a.id = ap.assembly_id
        LEFT JOIN oem_model_years y ON y.id = a.model_year_id
        LEFT JOIN oem_models m ON m.id = y.model_id
        LEFT JOIN oem_makes mk ON mk.id = m.make_id
        LEFT JOIN oem_parts p ON p.id = ap.part_id
        WHERE mk.id IS NULL OR p.id IS NULL
        """
    ).fetchone()[0]
    assert orphans == 0


def test_concurrent_merges_create_one_model(store):
    workers = 8
    barrier = threading.Barrier(workers)
    upserter = CatalogUpserter(store)

    def merge(i):
        barrier.wait()
        return upserter.merge([_record(model="Summit X 800", year=2010 + i, part_number=f"P{i}")])

    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = list(pool.map(merge, range(workers)))

    assert all(r.failed == 0 for r in results)
    counts = store.table_counts()
    assert counts["oem_makes"] == 1
    assert counts["oem_models"] == 1
    assert counts["oem_model_years"] == workers
    assert sum(r.created["oem_models"] for r in results) == 1


def test_empty_page_merges_nothing(store):
    result = CatalogUpserter(store).merge([])
    assert result.merged == 0
    assert sum(store.table_counts().values()) == 0


def test_unreachable_store_raises(tmp_path):
    store = CatalogStore(tmp_path / "missing-dir" / "catalog.db")
    with pytest.raises(sqlite3.Error):
        CatalogUpserter(store).merge([_record()])


def test_key_helpers():
    assert name_key("  Ski-Doo   MXZ ") == "ski-doo mxz"
    assert normalize_part_number(" 512 060 503 ") == "512060503"
    assert normalize_part_number("ab-12") == "AB-12"


def test_non_string_fields_do_not_abort_the_page(store):
    records = [
        _record(part_number=1322871),
        _record(quantity=[2], part_number="P2"),
        _record(part_number="P3"),
    ]

    result = CatalogUpserter(store).merge(records)

    assert result.merged == 2
    assert result.failed == 1
    parts = {r["part_number"] for r in store.conn.execute("SELECT part_number FROM oem_parts")}
    assert parts == {"1322871", "P3"}
