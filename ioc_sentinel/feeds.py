"""Threat feed acquisition with TTL caching, integrity hashing and offline fallback.

Each feed is fetched independently so either may fail without blocking the
other. The policy for one source, in order:

1. Reuse the cached payload when it is younger than the TTL and its SHA-256
   companion file matches. A mismatch is distrusted and refetched.
2. Otherwise download over HTTPS with a fixed timeout. Redirects are never
   followed and the body is capped while streaming. A successful body is
   written atomically (temp file + rename) together with its hash.
3. On any network failure fall back to the bundled offline copy.
4. Without a fallback the source fails on its own; the run continues with
   whatever sources succeeded, down to zero.

Public API:
    FeedSource: Description of one feed (URL, cache file, fallback file)
    FeedError: Base error for a failed source
    fetch_feed: Fetch one source following the policy above
    fetch_threats: Fetch both sources concurrently and merge them
    load_denylist: Synchronous entry point used by the CLI
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

import httpx

from ioc_sentinel.config import (
    CACHE_TTL_SECONDS,
    CSV_FEED_FILENAME,
    IOC_CSV_URL,
    IOC_JSON_URL,
    JSON_FEED_FILENAME,
    MAX_DOWNLOAD_BYTES,
    MAX_FILE_SIZE_BYTES,
    NETWORK_TIMEOUT_SECONDS,
    USER_AGENT,
    ScanConfig,
)
from ioc_sentinel.denylist import Denylist, parse_csv_feed, parse_json_feed
from ioc_sentinel.pathguard import read_text_capped, sha256_hex

logger = logging.getLogger(__name__)

HASH_SUFFIX = ".sha256"


class FeedError(Exception):
    """A threat feed could not be obtained from network, cache or fallback."""


class FeedRedirectError(FeedError):
    """The feed server answered with a redirect, which is never followed."""


class FeedTooLargeError(FeedError):
    """The feed body exceeded the download cap."""


@dataclass(frozen=True)
class FeedSource:
    """One independently fetched threat feed.

    Attributes:
        name: Human-readable source label used in log lines
        url: HTTPS URL of the raw feed
        cache_file: Location of the cached payload
        fallback_file: Bundled offline copy, or None
        parser: Function turning the raw payload into a denylist mapping
    """

    name: str
    url: str
    cache_file: Path
    fallback_file: Path | None
    parser: Callable[[str], dict[str, set[str]]]


def default_sources(config: ScanConfig) -> list[FeedSource]:
    """Return the two standard feeds wired to the configured directories."""
    return [
        FeedSource(
            name="Wiz.io CSV",
            url=IOC_CSV_URL,
            cache_file=config.cache_dir / CSV_FEED_FILENAME,
            fallback_file=config.fallback_dir / CSV_FEED_FILENAME,
            parser=parse_csv_feed,
        ),
        FeedSource(
            name="Malicious packages JSON",
            url=IOC_JSON_URL,
            cache_file=config.cache_dir / JSON_FEED_FILENAME,
            fallback_file=config.fallback_dir / JSON_FEED_FILENAME,
            parser=parse_json_feed,
        ),
    ]


# ---------------------------------------------------------------------------
# Cache entries
# ---------------------------------------------------------------------------


def is_cache_fresh(cache_file: Path, ttl_seconds: float = CACHE_TTL_SECONDS) -> bool:
    """Return True if ``cache_file`` exists and is younger than the TTL."""
    try:
        age = time.time() - cache_file.stat().st_mtime
    except OSError:
        return False
    return age < ttl_seconds


def verify_cache_integrity(cache_file: Path) -> bool:
    """Check the cached payload against its companion SHA-256 file.

    A missing hash file means the entry cannot be verified and is not trusted.
    """
    hash_file = cache_file.with_name(cache_file.name + HASH_SUFFIX)
    try:
        stored = hash_file.read_text(encoding="utf-8").strip()
        payload = cache_file.read_bytes()
    except OSError:
        return False
    return bool(stored) and sha256_hex(payload) == stored


def load_cache(cache_file: Path) -> str | None:
    """Return the cached payload text, or None when it cannot be read."""
    try:
        data = cache_file.read_bytes()
    except OSError:
        return None
    return data.decode("utf-8", errors="replace")


def save_cache(cache_file: Path, content: str) -> None:
    """Persist ``content`` and its hash atomically. Failures are logged, not raised."""
    payload = content.encode("utf-8")
    try:
        cache_file.parent.mkdir(parents=True, exist_ok=True)
        _atomic_write(cache_file, payload)
        _atomic_write(
            cache_file.with_name(cache_file.name + HASH_SUFFIX),
            sha256_hex(payload).encode("ascii"),
        )
    except OSError as exc:
        logger.warning("Could not write feed cache %s: %s", cache_file, exc)


def load_fallback(fallback_file: Path | None) -> str | None:
    if fallback_file is None:
        return None
    try:
        return read_text_capped(fallback_file, MAX_FILE_SIZE_BYTES)
    except OSError:
        return None


def _atomic_write(target: Path, data: bytes) -> None:
    fd, tmp_name = tempfile.mkstemp(prefix=target.name + ".", suffix=".tmp", dir=target.parent)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        os.replace(tmp_name, target)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


# ---------------------------------------------------------------------------
# Network
# ---------------------------------------------------------------------------


def new_client() -> httpx.AsyncClient:
    """Create the HTTP client used for feed downloads (redirects disabled)."""
    return httpx.AsyncClient(
        timeout=NETWORK_TIMEOUT_SECONDS,
        follow_redirects=False,
        headers={"User-Agent": USER_AGENT},
    )


async def download(client: httpx.AsyncClient, url: str, max_bytes: int = MAX_DOWNLOAD_BYTES) -> str:
    """Download ``url`` over HTTPS with a streamed size cap.

    Raises:
        FeedError: For non-HTTPS URLs and non-2xx responses.
        FeedRedirectError: For 3xx responses.
        FeedTooLargeError: When the body exceeds ``max_bytes``.
        httpx.HTTPError: For timeouts and transport errors.
    """
    if urlparse(url).scheme != "https":
        raise FeedError(f"Only HTTPS URLs are allowed: {url}")

    async with client.stream("GET", url) as response:
        if response.is_redirect:
            location = response.headers.get("location", "")
            raise FeedRedirectError(f"Redirect to {location or 'unknown location'}")
        if not response.is_success:
            raise FeedError(f"HTTP {response.status_code}")

        chunks: list[bytes] = []
        received = 0
        async for chunk in response.aiter_bytes():
            received += len(chunk)
            if received > max_bytes:
                raise FeedTooLargeError(f"Response larger than {max_bytes} bytes")
            chunks.append(chunk)

    return b"".join(chunks).decode("utf-8", errors="replace")


async def fetch_feed(
    source: FeedSource,
    client: httpx.AsyncClient,
    use_cache: bool = True,
    ttl_seconds: float = CACHE_TTL_SECONDS,
    timeout_seconds: float = NETWORK_TIMEOUT_SECONDS,
) -> str:
    """Fetch one feed following the cache → network → fallback policy.

    Args:
        source: The feed to fetch.
        client: Async HTTP client (must not follow redirects).
        use_cache: When False the cache is bypassed (but still refreshed).
        ttl_seconds: Maximum age of a reusable cache entry.
        timeout_seconds: Wall-clock limit for the whole download.

    Returns:
        The raw feed payload.

    Raises:
        FeedError: If the network fetch failed and no fallback exists.
    """
    if use_cache and is_cache_fresh(source.cache_file, ttl_seconds):
        if verify_cache_integrity(source.cache_file):
            cached = load_cache(source.cache_file)
            if cached is not None:
                logger.info("%s: loaded from cache", source.name)
                return cached
        else:
            logger.warning("%s: cache integrity check failed, re-fetching", source.name)

    try:
        body = await asyncio.wait_for(download(client, source.url), timeout_seconds)
    except (FeedError, httpx.HTTPError, asyncio.TimeoutError) as exc:
        logger.warning("%s: download failed (%s), trying fallback", source.name, _describe(exc))
        fallback = load_fallback(source.fallback_file)
        if fallback is not None:
            logger.info("%s: using offline fallback", source.name)
            return fallback
        raise FeedError(f"{source.name}: {_describe(exc)} and no fallback available") from exc

    logger.info("%s: downloaded %.1f KB", source.name, len(body) / 1024)
    save_cache(source.cache_file, body)
    return body


async def fetch_threats(
    sources: Sequence[FeedSource],
    use_cache: bool = True,
    client: httpx.AsyncClient | None = None,
) -> Denylist:
    """Fetch every source concurrently and merge the parsed results.

    Each source settles independently: a failure is logged and skipped, so a
    run with zero successful sources yields an empty denylist.
    """
    owns_client = client is None
    http = client if client is not None else new_client()
    try:
        results = await asyncio.gather(
            *(fetch_feed(source, http, use_cache=use_cache) for source in sources),
            return_exceptions=True,
        )
    finally:
        if owns_client:
            await http.aclose()

    denylist = Denylist()
    for source, result in zip(sources, results):
        if isinstance(result, BaseException):
            if not isinstance(result, Exception):
                raise result
            logger.error("%s: failed: %s", source.name, result)
            continue
        try:
            parsed = source.parser(result)
        except (ValueError, RecursionError) as exc:
            logger.error("%s: unparseable feed: %s", source.name, exc)
            continue
        denylist.merge(parsed)
        logger.info("%s: loaded successfully", source.name)

    logger.info("Threat database: %d unique packages targeted", len(denylist))
    return denylist


def load_denylist(config: ScanConfig, client: httpx.AsyncClient | None = None) -> Denylist:
    """Synchronous wrapper around ``fetch_threats`` for the configured sources."""
    if not config.use_cache:
        logger.info("Feed cache bypassed")
    return asyncio.run(
        fetch_threats(default_sources(config), use_cache=config.use_cache, client=client)
    )


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__
