"""
Page extraction contract plus the default assembly-page adapter.

An extractor turns one fetched catalog page into CatalogRecords, or raises
ExtractionError for a page it cannot make sense of (the page is then skipped).
Vendor markup changes often; swap in another PageExtractor rather than
growing this one.
"""
import re
from typing import Protocol
from urllib.parse import unquote, urlparse

from bs4 import BeautifulSoup

from oemcatalog.models import CatalogRecord, normalize_name


class ExtractionError(Exception):
    """A catalog page could not be parsed into records."""


class PageExtractor(Protocol):
    def extract(self, url: str, html: str) -> list[CatalogRecord]:
        ...


# Header text -> record field, first match wins
_COLUMN_PATTERNS = (
    ("part_number", re.compile(r"part\s*(number|no\.?|#)|sku|oem\s*#", re.I)),
    ("position", re.compile(r"^(ref\.?\s*(no\.?|#)?|#|item|pos(ition)?|key)$", re.I)),
    ("quantity", re.compile(r"^(qty|quantity|req)", re.I)),
    ("part_name", re.compile(r"description|part\s*name|^name$", re.I)),
)


def _slug_to_label(slug: str) -> str:
    """Turn URL slug into display label (e.g. mxz-tnt-600 -> Mxz Tnt 600)."""
    return normalize_name(unquote(slug).replace("-", " ").replace("_", " ").replace("+", " ")).title()


def catalog_path_parts(url: str, marker: str = "catalog") -> list[str]:
    """Path segments after the /catalog/ marker (e.g. .../catalog/ski-doo/snowmobile/2015/mxz/engine -> 5 parts)."""
    segments = [s for s in urlparse(url).path.split("/") if s]
    if marker not in segments:
        return []
    return segments[segments.index(marker) + 1:]


def _map_columns(header_cells: list[str]) -> dict[str, int]:
    columns: dict[str, int] = {}
    for idx, text in enumerate(header_cells):
        text = normalize_name(text)
        for field_name, pattern in _COLUMN_PATTERNS:
            if field_name not in columns and pattern.search(text):
                columns[field_name] = idx
                break
    return columns


def _parse_quantity(text: str) -> int | None:
    m = re.search(r"\d+", text or "")
    return int(m.group()) if m else None


class AssemblyTableExtractor:
    """
    Reads make/model/year/assembly from the catalog URL
    (/catalog/<make>/<vehicle type>/<year>/<model>/<assembly>) and one record per
    row of the page's parts table. Shallower catalog pages (make, year or model
    listings) carry no parts and yield no records.
    """

    assembly_depth = 5

    def extract(self, url: str, html: str) -> list[CatalogRecord]:
        parts = catalog_path_parts(url)
        if len(parts) < self.assembly_depth:
            return []
        make_slug, _vehicle_type, year, model_slug, assembly_slug = parts[: self.assembly_depth]
        if not year.isdigit():
            raise ExtractionError(f"year segment is not numeric: {year!r}")
        if not (html or "").strip():
            raise ExtractionError("empty page body")

        soup = BeautifulSoup(html, "html.parser")
        heading = soup.find("h1")
        assembly_name = normalize_name(heading.get_text(" ")) if heading else ""
        assembly_name = assembly_name or _slug_to_label(assembly_slug)

        table, header_row, columns = self._find_parts_table(soup)
        if table is None:
            raise ExtractionError("no parts table on assembly page")

        records = []
        for tr in table.find_all("tr"):
            cells = tr.find_all("td")
            if tr is header_row or not cells:
                continue
            texts = [normalize_name(td.get_text(" ")) for td in cells]

            def cell(name: str) -> str:
                idx = columns.get(name)
                return texts[idx] if idx is not None and idx < len(texts) else ""

            part_number = cell("part_number")
            if not part_number:
                continue
            records.append(CatalogRecord(
                make=_slug_to_label(make_slug),
                model=_slug_to_label(model_slug),
                year=int(year),
                assembly=assembly_name,
                assembly_code=assembly_slug,
                part_number=part_number,
                part_name=cell("part_name") or None,
                quantity=_parse_quantity(cell("quantity")),
                position=cell("position") or None,
                source_url=url,
            ))
        return records

    @staticmethod
    def _find_parts_table(soup: BeautifulSoup):
        for table in soup.find_all("table"):
            header_row = table.find("tr")
            if header_row is None:
                continue
            headers = [c.get_text(" ") for c in header_row.find_all(["th", "td"])]
            columns = _map_columns(headers)
            if "part_number" in columns:
                return table, header_row, columns
        return None, None, {}
