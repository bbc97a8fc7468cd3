from collections import defaultdict

import pytest

from oemcatalog.models import CatalogStore


class FakeResponse:
    def __init__(self, status: int, body: str = ""):
        self.status = status
        self._body = body
        self.disposed = False

    @property
    def ok(self) -> bool:
        return 200 <= self.status <= 299

    async def text(self) -> str:
        return self._body

    async def dispose(self) -> None:
        self.disposed = True


class FakeRequestContext:
    """
    Stand-in for a Playwright APIRequestContext. `routes` maps URL -> list of
    (status, body) tuples or exceptions, consumed in order; the last entry repeats.
    Unknown URLs answer 404.
    """

    def __init__(self, routes: dict | None = None):
        self.routes = dict(routes or {})
        self.calls: list[str] = []
        self.headers_seen: list[dict] = []
        self.counts: dict[str, int] = defaultdict(int)

    async def get(self, url, headers=None, timeout=None):
        self.calls.append(url)
        self.headers_seen.append(headers or {})
        script = self.routes.get(url)
        if not script:
            return FakeResponse(404, "<html>Not Found</html>")
        n = self.counts[url]
        self.counts[url] += 1
        item = script[min(n, len(script) - 1)]
        if isinstance(item, Exception):
            raise item
        status, body = item
        return FakeResponse(status, body)


class RecordingSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class CountingGate:
    interval_sec = 0.0

    def __init__(self):
        self.starts = 0

    async def wait(self) -> None:
        self.starts += 1


def sitemap_index(*locs: str) -> str:
    entries = "".join(f"<sitemap><loc>{loc}</loc></sitemap>" for loc in locs)
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        f'<sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">{entries}</sitemapindex>'
    )


def urlset(*locs: str) -> str:
    entries = "".join(f"<url><loc>{loc}</loc><changefreq>weekly</changefreq></url>" for loc in locs)
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        f'<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">{entries}</urlset>'
    )


@pytest.fixture
def store(tmp_path):
    with CatalogStore(tmp_path / "catalog.db") as s:
        yield s
