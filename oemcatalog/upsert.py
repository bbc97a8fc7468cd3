"""
Catalog merge: natural-key upserts of extracted records into the six-table
hierarchy, one IMMEDIATE transaction per record, ancestors created on demand.
"""
import logging
import sqlite3
from collections import Counter
from contextlib import closing
from dataclasses import dataclass, field

from oemcatalog.models import CATALOG_TABLES, CatalogRecord, CatalogStore

logger = logging.getLogger("oemcatalog.upsert")

CREATED = "created"
UPDATED = "updated"
UNCHANGED = "unchanged"


class MergeError(Exception):
    """Every record on a page failed to merge; the page has to be crawled again."""


@dataclass
class MergeResult:
    created: Counter = field(default_factory=Counter)
    updated: Counter = field(default_factory=Counter)
    unchanged: Counter = field(default_factory=Counter)
    merged: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def count(self, table: str, outcome: str) -> None:
        getattr(self, outcome)[table] += 1

    def add(self, other: "MergeResult") -> None:
        self.created.update(other.created)
        self.updated.update(other.updated)
        self.unchanged.update(other.unchanged)
        self.merged += other.merged
        self.failed += other.failed
        self.errors.extend(other.errors)

    def summary(self) -> str:
        parts = []
        for table in CATALOG_TABLES:
            c, u = self.created[table], self.updated[table]
            if c or u:
                parts.append(f"{table.removeprefix('oem_')} +{c}/~{u}")
        return ", ".join(parts) or "no changes"


def _upsert(
    conn: sqlite3.Connection,
    table: str,
    key: dict,
    attrs: dict | None = None,
    refresh: tuple[str, ...] = (),
) -> tuple[int, str]:
    """
    INSERT ... ON CONFLICT(key) DO NOTHING, then refresh the `refresh` columns
    whose incoming value is non-null and different. Returns (row id, outcome).
    """
    attrs = attrs or {}
    cols = list(key) + list(attrs)
    values = list(key.values()) + list(attrs.values())
    cur = conn.execute(
        f"INSERT INTO {table} ({', '.join(cols)}) VALUES ({', '.join('?' * len(cols))}) "
        f"ON CONFLICT({', '.join(key)}) DO NOTHING",
        values,
    )
    if cur.rowcount == 1:
        return cur.lastrowid, CREATED

    where = " AND ".join(f"{c} = ?" for c in key)
    outcome = UNCHANGED
    changed = {c: attrs[c] for c in refresh if attrs.get(c) is not None}
    if changed:
        sets = ", ".join(f"{c} = ?" for c in changed)
        differs = " OR ".join(f"{c} IS NOT ?" for c in changed)
        cur = conn.execute(
            f"UPDATE {table} SET {sets}, updated_at = datetime('now') WHERE {where} AND ({differs})",
            [*changed.values(), *key.values(), *changed.values()],
        )
        if cur.rowcount:
            outcome = UPDATED
    row = conn.execute(f"SELECT id FROM {table} WHERE {where}", list(key.values())).fetchone()
    return row[0], outcome


class CatalogUpserter:
    def __init__(self, store: CatalogStore):
        self.store = store

    def _merge_one(self, conn: sqlite3.Connection, r: CatalogRecord) -> list[tuple[str, str]]:
        outcomes = []
        make_id, o = _upsert(conn, "oem_makes", {"name_key": r.make.casefold()}, {"name": r.make})
        outcomes.append(("oem_makes", o))
        model_id, o = _upsert(conn, "oem_models", {"make_id": make_id, "name_key": r.model.casefold()}, {"name": r.model})
        outcomes.append(("oem_models", o))
        model_year_id, o = _upsert(conn, "oem_model_years", {"model_id": model_id, "year": r.year})
        outcomes.append(("oem_model_years", o))
        assembly_id, o = _upsert(
            conn,
            "oem_assemblies",
            {"model_year_id": model_year_id, "code": r.assembly_code},
            {"name": r.assembly, "source_url": r.source_url},
            refresh=("name", "source_url"),
        )
        outcomes.append(("oem_assemblies", o))
        part_id, o = _upsert(conn, "oem_parts", {"part_number": r.part_number}, {"name": r.part_name}, refresh=("name",))
        outcomes.append(("oem_parts", o))
        _, o = _upsert(
            conn,
            "oem_assembly_parts",
            {"assembly_id": assembly_id, "part_id": part_id},
            {"quantity": r.quantity, "position": r.position},
            refresh=("quantity", "position"),
        )
        outcomes.append(("oem_assembly_parts", o))
        return outcomes

    def merge(self, records) -> MergeResult:
        """
        Merge one page's records. Each record commits or rolls back on its own;
        a bad record is logged and counted without touching its siblings.
        Raises sqlite3.Error only when the store cannot be opened at all.
        """
        result = MergeResult()
        records = list(records)
        if not records:
            return result
        with closing(self.store.connect()) as conn:
            for record in records:
                try:
                    clean = record.validated()
                    conn.execute("BEGIN IMMEDIATE")
                    try:
                        outcomes = self._merge_one(conn, clean)
                        conn.execute("COMMIT")
                    except BaseException:
                        if conn.in_transaction:
                            conn.execute("ROLLBACK")
                        raise
                except (ValueError, TypeError, sqlite3.Error) as e:
                    result.failed += 1
                    result.errors.append(f"{record.part_number}: {e}")
                    logger.warning(
                        "Merge failed for %s %s %s / %s part %s: %s",
                        record.year, record.make, record.model, record.assembly, record.part_number, e,
                    )
                    continue
                for table, outcome in outcomes:
                    result.count(table, outcome)
                result.merged += 1
        return result
