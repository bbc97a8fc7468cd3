"""
Retrying HTTP fetcher – browser-like headers, shared politeness gate,
status classification and body snippets for diagnosing anti-bot blocks.
"""
import asyncio
import logging
import re
from dataclasses import dataclass

from playwright.async_api import Error as PlaywrightError

from oemcatalog.config import (
    BODY_SNIPPET_CHARS,
    DEFAULT_HEADERS,
    FETCH_TIMEOUT_MS,
    MAX_RETRIES,
    RETRY_ALL_ERRORS,
    RETRY_BACKOFF_MS,
)

logger = logging.getLogger("oemcatalog.fetcher")

BLOCK_STATUSES = frozenset({403, 429})


class FetchExhausted(Exception):
    """All attempts for one URL failed. Carries the last status (None for transport errors) and body snippet."""

    def __init__(self, url: str, attempts: int, status: int | None, snippet: str):
        self.url = url
        self.attempts = attempts
        self.status = status
        self.snippet = snippet
        super().__init__(f"fetch failed after {attempts} attempt(s) (last status {status}): {url}")


@dataclass(frozen=True)
class RetryPolicy:
    """
    max_attempts: total attempts per URL (first try included).
    backoff_ms: delay before attempt n+1 is backoff_ms * n.
    retry_all_errors: when False only 403/429/5xx (and transport errors) are retried.
    """
    max_attempts: int = MAX_RETRIES
    backoff_ms: int = RETRY_BACKOFF_MS
    retry_all_errors: bool = False

    @classmethod
    def strict(cls, max_attempts: int = MAX_RETRIES, backoff_ms: int = RETRY_BACKOFF_MS) -> "RetryPolicy":
        return cls(max_attempts=max_attempts, backoff_ms=backoff_ms, retry_all_errors=False)

    @classmethod
    def lenient(cls, max_attempts: int = MAX_RETRIES, backoff_ms: int = RETRY_BACKOFF_MS) -> "RetryPolicy":
        return cls(max_attempts=max_attempts, backoff_ms=backoff_ms, retry_all_errors=True)

    @classmethod
    def from_config(cls) -> "RetryPolicy":
        return cls(max_attempts=MAX_RETRIES, backoff_ms=RETRY_BACKOFF_MS, retry_all_errors=RETRY_ALL_ERRORS)

    def is_retryable(self, status: int | None) -> bool:
        if status is None:
            return True
        if status in BLOCK_STATUSES or 500 <= status <= 599:
            return True
        return self.retry_all_errors

    def delay_sec(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number `attempt` (1-based)."""
        return self.backoff_ms * attempt / 1000.0


def body_snippet(text: str | None, limit: int = BODY_SNIPPET_CHARS) -> str:
    """First `limit` chars of a response body with whitespace collapsed."""
    if not text:
        return ""
    return re.sub(r"\s+", " ", text[:limit]).strip()


class Fetcher:
    """
    GET pages through a Playwright APIRequestContext (or anything with the same
    get/status/ok/text/dispose surface). Every attempt waits on `gate` first,
    so retries count against the same politeness budget as first tries.
    Once `should_stop()` returns True no further retries are attempted.
    """

    def __init__(
        self,
        request_context,
        policy: RetryPolicy | None = None,
        gate=None,
        headers: dict | None = None,
        timeout_ms: int = FETCH_TIMEOUT_MS,
        sleep=asyncio.sleep,
        should_stop=None,
    ):
        self.request_context = request_context
        self.policy = policy or RetryPolicy.from_config()
        self.gate = gate
        self.headers = dict(DEFAULT_HEADERS if headers is None else headers)
        self.timeout_ms = timeout_ms
        self._sleep = sleep
        self._should_stop = should_stop

    async def _get_once(self, url: str) -> tuple[int | None, str]:
        try:
            response = await self.request_context.get(url, headers=self.headers, timeout=self.timeout_ms)
        except PlaywrightError as e:
            return None, str(e)
        try:
            text = await response.text()
        except PlaywrightError as e:
            text = str(e)
        finally:
            await response.dispose()
        return response.status, text

    async def fetch(self, url: str) -> str:
        policy = self.policy
        status: int | None = None
        snippet = ""
        attempt = 0
        for attempt in range(1, policy.max_attempts + 1):
            if self.gate is not None:
                await self.gate.wait()
            logger.info("[fetch] attempt %d/%d -> %s", attempt, policy.max_attempts, url)
            status, text = await self._get_once(url)
            if status is not None and 200 <= status <= 299:
                if attempt > 1:
                    logger.info("[fetch] %s ok after %d attempts", url, attempt)
                return text

            snippet = body_snippet(text)
            logger.warning(
                "[fetch] %s on %s (attempt %d/%d): %s",
                f"HTTP {status}" if status is not None else "transport error",
                url, attempt, policy.max_attempts, snippet or "[empty body]",
            )
            if not policy.is_retryable(status):
                break
            if self._should_stop is not None and self._should_stop():
                logger.info("[fetch] shutdown requested; not retrying %s", url)
                break
            if attempt < policy.max_attempts:
                await self._sleep(policy.delay_sec(attempt))
        raise FetchExhausted(url, attempt, status, snippet)
