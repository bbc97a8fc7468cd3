"""
OEM catalog SQLite schema (WAL mode).
oem_makes -> oem_models -> oem_model_years -> oem_assemblies -> oem_assembly_parts <- oem_parts,
plus oem_crawl_pages (last crawl status per page URL, for resume).
"""
import re
import sqlite3
from contextlib import closing
from dataclasses import dataclass
from pathlib import Path

from oemcatalog.config import DB_PATH, SQLITE_TIMEOUT_SEC

CATALOG_TABLES = (
    "oem_makes",
    "oem_models",
    "oem_model_years",
    "oem_assemblies",
    "oem_parts",
    "oem_assembly_parts",
)

MIN_YEAR = 1900
MAX_YEAR = 2100

SCHEMA = """
CREATE TABLE IF NOT EXISTS oem_makes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    name_key TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);
CREATE TABLE IF NOT EXISTS oem_models (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    make_id INTEGER NOT NULL REFERENCES oem_makes(id),
    name TEXT NOT NULL,
    name_key TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    UNIQUE (make_id, name_key)
);
CREATE TABLE IF NOT EXISTS oem_model_years (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    model_id INTEGER NOT NULL REFERENCES oem_models(id),
    year INTEGER NOT NULL,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    UNIQUE (model_id, year)
);
CREATE TABLE IF NOT EXISTS oem_assemblies (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    model_year_id INTEGER NOT NULL REFERENCES oem_model_years(id),
    name TEXT NOT NULL,
    code TEXT NOT NULL,
    source_url TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    UNIQUE (model_year_id, code)
);
CREATE TABLE IF NOT EXISTS oem_parts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    part_number TEXT NOT NULL UNIQUE,
    name TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);
CREATE TABLE IF NOT EXISTS oem_assembly_parts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    assembly_id INTEGER NOT NULL REFERENCES oem_assemblies(id),
    part_id INTEGER NOT NULL REFERENCES oem_parts(id),
    quantity INTEGER,
    position TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    UNIQUE (assembly_id, part_id)
);
CREATE INDEX IF NOT EXISTS idx_oem_assembly_parts_part ON oem_assembly_parts(part_id);
CREATE TABLE IF NOT EXISTS oem_crawl_pages (
    url TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    last_error TEXT,
    records INTEGER NOT NULL DEFAULT 0,
    crawled_at TEXT NOT NULL DEFAULT (datetime('now'))
);
CREATE INDEX IF NOT EXISTS idx_oem_crawl_pages_status ON oem_crawl_pages(status);
"""


def normalize_name(value) -> str:
    """Collapse whitespace runs and strip (e.g. '  Ski-Doo   MXZ ' -> 'Ski-Doo MXZ')."""
    return re.sub(r"\s+", " ", "" if value is None else str(value)).strip()


def name_key(value) -> str:
    """Case-insensitive natural key for makes/models/assemblies."""
    return normalize_name(value).casefold()


def normalize_part_number(value) -> str:
    """Part numbers compare without whitespace and case (e.g. ' 512 060 503 ' -> '512060503')."""
    return re.sub(r"\s+", "", "" if value is None else str(value)).upper()


@dataclass
class CatalogRecord:
    """
    One assembly-part line as produced by a page extractor. Names the whole
    ancestry (make/model/year/assembly) so it can be merged on its own.
    """
    make: str
    model: str
    year: int | str
    assembly: str
    part_number: str
    part_name: str | None = None
    quantity: int | None = None
    position: str | None = None
    assembly_code: str | None = None
    source_url: str | None = None

    def validated(self) -> "CatalogRecord":
        """Normalized copy; raises ValueError for a record that cannot be keyed."""
        make = normalize_name(self.make)
        model = normalize_name(self.model)
        assembly = normalize_name(self.assembly)
        part_number = normalize_part_number(self.part_number)
        for label, value in (("make", make), ("model", model), ("assembly", assembly), ("part_number", part_number)):
            if not value:
                raise ValueError(f"record missing {label}")
        try:
            year = int(str(self.year).strip())
        except ValueError:
            raise ValueError(f"record year is not a number: {self.year!r}") from None
        if not MIN_YEAR <= year <= MAX_YEAR:
            raise ValueError(f"record year out of range: {year}")
        quantity = self.quantity
        if quantity is not None:
            quantity = int(quantity)
            if quantity < 0:
                raise ValueError(f"negative quantity: {quantity}")
        return CatalogRecord(
            make=make,
            model=model,
            year=year,
            assembly=assembly,
            part_number=part_number,
            part_name=normalize_name(self.part_name) or None,
            quantity=quantity,
            position=normalize_name(self.position) or None,
            assembly_code=name_key(self.assembly_code) or name_key(assembly),
            source_url=(self.source_url or "").strip() or None,
        )


class CatalogStore:
    """
    Store handle for one ingestion run. Hands out short-lived connections
    (one per merge, like the scraper's per-task db_conn_factory) so each
    worker thread writes through its own connection.
    """

    def __init__(self, path: Path | str = DB_PATH, timeout: float = SQLITE_TIMEOUT_SEC):
        self.path = Path(path)
        self.timeout = timeout
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> sqlite3.Connection:
        """Autocommit connection; callers open explicit transactions (BEGIN IMMEDIATE) for writes."""
        conn = sqlite3.connect(self.path, timeout=self.timeout, isolation_level=None, check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.row_factory = sqlite3.Row
        return conn

    def open(self) -> "CatalogStore":
        """Create the schema and keep a control connection for counts and the crawl log."""
        if self._conn is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = self.connect()
            self._conn.executescript(SCHEMA)
        return self

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> "CatalogStore":
        return self.open()

    def __exit__(self, *exc) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("CatalogStore is not open")
        return self._conn

    def table_counts(self) -> dict[str, int]:
        return {t: self.conn.execute(f"SELECT COUNT(*) FROM {t}").fetchone()[0] for t in CATALOG_TABLES}

    def record_crawl_page(self, url: str, status: str, error: str | None = None, records: int = 0) -> None:
        """Upsert the last crawl outcome for a page. Uses its own connection so worker threads can call it."""
        with closing(self.connect()) as conn:
            conn.execute(
                """
                INSERT INTO oem_crawl_pages (url, status, last_error, records, crawled_at)
                VALUES (?, ?, ?, ?, datetime('now'))
                ON CONFLICT(url) DO UPDATE SET
                    status=excluded.status,
                    last_error=excluded.last_error,
                    records=excluded.records,
                    crawled_at=excluded.crawled_at
                """,
                (url, status, error[:500] if error else None, records),
            )

    def crawl_pages_with_status(self, status: str) -> set[str]:
        return {row[0] for row in self.conn.execute("SELECT url FROM oem_crawl_pages WHERE status = ?", (status,))}

    def crawl_status_counts(self) -> dict[str, int]:
        return {
            row["status"]: row["n"]
            for row in self.conn.execute("SELECT status, COUNT(*) AS n FROM oem_crawl_pages GROUP BY status ORDER BY status")
        }
