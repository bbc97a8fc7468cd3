"""
Quick script to print current catalog size (rows per table) and crawl-log status.
Usage: python -m oemcatalog.catalog_viewer [--db PATH]
"""
import argparse
from pathlib import Path

from oemcatalog.config import DB_PATH
from oemcatalog.models import CatalogStore


def render(store: CatalogStore) -> str:
    lines = ["Catalog:"]
    for table, count in store.table_counts().items():
        lines.append(f"  {table}: {count}")
    statuses = store.crawl_status_counts()
    lines.append("Crawl log:")
    if not statuses:
        lines.append("  (no pages crawled yet)")
    for status, count in statuses.items():
        lines.append(f"  {status}: {count}")
    return "\n".join(lines)


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(description="Show OEM catalog row counts and crawl progress")
    ap.add_argument("--db", type=Path, default=DB_PATH, help="SQLite catalog path")
    args = ap.parse_args(argv)
    with CatalogStore(args.db) as store:
        print(render(store))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
