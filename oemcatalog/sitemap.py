"""
Sitemap expansion: walk a sitemap-index tree down to its urlsets and return
the deduplicated set of leaf page URLs.
"""
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field

from oemcatalog.fetcher import FetchExhausted

logger = logging.getLogger("oemcatalog.sitemap")

INDEX = "index"
URLSET = "urlset"


class SitemapError(Exception):
    """A sitemap could not be fetched or parsed; the crawl has no valid URL list."""


@dataclass
class SitemapNode:
    url: str
    kind: str  # INDEX or URLSET
    children: list[str] = field(default_factory=list)


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1] if "}" in tag else tag


def _child_locs(root: ET.Element, entry_tag: str) -> list[str]:
    """<loc> text of every direct `entry_tag` child; one entry or many, always a list."""
    locs = []
    for entry in root:
        if _local_name(entry.tag) != entry_tag:
            continue
        for child in entry:
            if _local_name(child.tag) == "loc":
                loc = (child.text or "").strip()
                if loc:
                    locs.append(loc)
                break
    return locs


def parse_sitemap(url: str, xml_text: str) -> SitemapNode:
    """Classify a sitemap document as index or urlset. Raises SitemapError if it is neither."""
    try:
        root = ET.fromstring(xml_text.lstrip("\ufeff \t\r\n"))
    except ET.ParseError as e:
        raise SitemapError(f"malformed sitemap XML at {url}: {e}") from e
    tag = _local_name(root.tag)
    if tag == "sitemapindex":
        return SitemapNode(url, INDEX, _child_locs(root, "sitemap"))
    if tag == "urlset":
        return SitemapNode(url, URLSET, _child_locs(root, "url"))
    raise SitemapError(f"unexpected sitemap root <{tag}> at {url}")


class SitemapExpander:
    def __init__(self, fetcher):
        self.fetcher = fetcher
        self.visited: list[str] = []

    async def expand(self, root_url: str) -> set[str]:
        """
        Depth-first over sitemap indexes. Each sitemap URL is fetched at most once,
        so cycles and repeated references terminate. Any fetch or parse failure
        aborts the whole expansion with SitemapError.
        """
        stack = [root_url]
        seen: set[str] = set()
        leaves: set[str] = set()
        while stack:
            url = stack.pop()
            if url in seen:
                continue
            seen.add(url)
            self.visited.append(url)
            try:
                body = await self.fetcher.fetch(url)
            except FetchExhausted as e:
                raise SitemapError(f"sitemap unreachable: {url} (last status {e.status}): {e.snippet}") from e
            node = parse_sitemap(url, body)
            if node.kind == INDEX:
                logger.info("Sitemap index %s: %d child sitemaps", url, len(node.children))
                stack.extend(c for c in node.children if c not in seen)
            else:
                logger.info("Sitemap %s: %d page URLs", url, len(node.children))
                leaves.update(node.children)
        logger.info("Sitemap expansion done: %d sitemaps, %d unique page URLs", len(seen), len(leaves))
        return leaves


def filter_urls(urls, include: tuple[str, ...] | list[str] = ()) -> list[str]:
    """Keep URLs containing every `include` substring; sorted for a deterministic crawl order."""
    return sorted(u for u in urls if all(s in u for s in include))
