"""
KNX Resolver — Discovery Trigger

Best-effort, fire-and-forget search for datasheets of products the catalog
does not know yet:

  search terms → web queries → .pdf links → extraction service

The extraction service fetches, extracts and stores on its own; nothing
here waits for it. No retries, no persisted job state, and two concurrent
resolutions of the same id may both trigger a run.
"""
from __future__ import annotations
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Coroutine, Optional
from urllib.parse import urlparse

import httpx

from config import Settings
from models import Manufacturer, ParsedSegments

logger = logging.getLogger(__name__)

MAX_TERMS = 3
MAX_QUERIES = 5
RESULTS_PER_QUERY = 5
TARGET_PDF_COUNT = 3
MAX_EXTRACTIONS = 2

MANUFACTURER_DOMAINS: dict[str, str] = {
    'Gira': 'gira.de',
    'MDT': 'mdt.de',
    'JUNG': 'jung.de',
    'Siemens': 'siemens.com',
    'ABB': 'abb.com',
    'Schneider Electric': 'se.com',
    'Hager': 'hager.com',
    'Theben': 'theben.de',
    'Weinzierl': 'weinzierl.de',
}

# Source ids understood by the extraction service
MANUFACTURER_SOURCES: dict[str, str] = {
    'Gira': 'gira',
    'MDT': 'mdt',
    'JUNG': 'jung',
    'Siemens': 'siemens',
    'ABB': 'abb',
    'Schneider Electric': 'schneider',
    'Hager': 'hager',
    'Theben': 'theben',
    'Weinzierl': 'weinzierl',
}


# ============================================================
# Detached tasks
# ============================================================

class DetachedTasks:
    """
    Runs coroutines without anyone awaiting them. Outcomes are only logged.
    Strong references are kept until completion so tasks are not
    garbage-collected mid-flight.
    """

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> None:
        try:
            task = asyncio.get_running_loop().create_task(coro, name=name)
        except RuntimeError:
            coro.close()
            logger.warning("No running event loop; dropped detached task %s", name)
            return
        self._tasks.add(task)
        task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.info("Detached task %s cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Detached task %s failed", task.get_name(), exc_info=exc)

    async def drain(self, timeout: float = 5.0) -> None:
        """Give in-flight tasks a chance to finish, then cancel the rest."""
        if not self._tasks:
            return
        pending = list(self._tasks)
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.info("Cancelled %d unfinished detached task(s)", len(still_running))


# ============================================================
# Query building
# ============================================================

def manufacturer_domain(manufacturer: Manufacturer) -> str:
    domain = MANUFACTURER_DOMAINS.get(manufacturer.display_short_name)
    if domain:
        return domain
    if manufacturer.website_url:
        url = manufacturer.website_url
        host = urlparse(url if '//' in url else f'//{url}').hostname or ''
        return host[4:] if host.startswith('www.') else host
    return ''


def manufacturer_source(manufacturer: Manufacturer) -> str:
    return MANUFACTURER_SOURCES.get(manufacturer.display_short_name, 'unknown')


def build_queries(manufacturer: Manufacturer, search_terms: list[str]) -> list[str]:
    """Targeted datasheet queries for the top terms, de-duplicated and capped."""
    domain = manufacturer_domain(manufacturer)
    short_name = manufacturer.display_short_name
    queries: list[str] = []
    for term in search_terms[:MAX_TERMS]:
        if domain:
            queries.append(f'site:{domain} "{term}" KNX datasheet filetype:pdf')
        queries.append(f'{short_name} "{term}" KNX datasheet filetype:pdf')
        queries.append(f'{short_name} "{term}" KNX product datasheet filetype:pdf')
    return list(dict.fromkeys(queries))[:MAX_QUERIES]


def pdf_links(search_response: Any) -> list[str]:
    if not isinstance(search_response, dict):
        return []
    links = []
    for result in search_response.get('organic') or []:
        link = result.get('link') if isinstance(result, dict) else None
        if isinstance(link, str) and link.lower().endswith('.pdf'):
            links.append(link)
    return links


# ============================================================
# Discovery Service
# ============================================================

class DiscoveryService:
    """Search → PDF → extraction hand-off. Never raises to its caller."""

    def __init__(
        self,
        search_api_key: Optional[str],
        extraction_service_key: Optional[str],
        extraction_url: str,
        tasks: DetachedTasks,
        search_url: str = "https://google.serper.dev/search",
        search_country: str = "de",
        search_language: str = "en",
        query_delay: float = 0.1,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.search_api_key = search_api_key
        self.extraction_service_key = extraction_service_key
        self.extraction_url = extraction_url
        self.tasks = tasks
        self.search_url = search_url
        self.search_country = search_country
        self.search_language = search_language
        self.query_delay = query_delay
        self.client = client
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings, tasks: DetachedTasks,
                      client: Optional[httpx.AsyncClient] = None) -> DiscoveryService:
        return cls(
            search_api_key=settings.serper_api_key,
            extraction_service_key=settings.crawler_service_key,
            extraction_url=settings.extraction_service_url,
            tasks=tasks,
            search_url=settings.search_api_url,
            search_country=settings.search_country,
            search_language=settings.search_language,
            query_delay=settings.discovery_query_delay_seconds,
            client=client,
            timeout=settings.http_timeout_seconds,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.search_api_key and self.extraction_service_key)

    def trigger(
        self,
        manufacturer: Manufacturer,
        segments: ParsedSegments,
        search_terms: list[str],
    ) -> None:
        """Start a discovery run in the background and return immediately."""
        logger.info("Discovery requested for %s (manufacturer=%s, terms=%s, enabled=%s)",
                    segments.raw, manufacturer.display_short_name, search_terms[:MAX_TERMS],
                    self.enabled)
        if not self.enabled:
            return
        self.tasks.spawn(
            self.run(manufacturer, segments, search_terms),
            name=f"discovery:{segments.raw}",
        )

    @asynccontextmanager
    async def _http(self):
        if self.client is not None:
            yield self.client
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                yield client

    async def run(
        self,
        manufacturer: Manufacturer,
        segments: ParsedSegments,
        search_terms: list[str],
    ) -> list[str]:
        """Returns the PDF links handed to extraction. Swallows every error."""
        if not self.enabled:
            return []
        try:
            async with self._http() as client:
                pdfs = await self._collect_pdfs(client, manufacturer, search_terms)
                handed = pdfs[:MAX_EXTRACTIONS]
                for pdf_url in handed:
                    await self._request_extraction(
                        client, pdf_url, manufacturer, segments, search_terms)
                return handed
        except Exception:
            logger.exception("Discovery run failed for %s", segments.raw)
            return []

    async def _collect_pdfs(
        self,
        client: httpx.AsyncClient,
        manufacturer: Manufacturer,
        search_terms: list[str],
    ) -> list[str]:
        found: list[str] = []
        queries = build_queries(manufacturer, search_terms)
        for i, query in enumerate(queries):
            if i:
                await asyncio.sleep(self.query_delay)
            try:
                response = await client.post(
                    self.search_url,
                    headers={"X-API-KEY": self.search_api_key,
                             "Content-Type": "application/json"},
                    json={"q": query, "num": RESULTS_PER_QUERY,
                          "gl": self.search_country, "hl": self.search_language},
                )
                response.raise_for_status()
                links = pdf_links(response.json())
            except (httpx.HTTPError, ValueError) as e:
                logger.warning("Search failed for %r: %s", query, e)
                continue

            new = [link for link in dict.fromkeys(links) if link not in found]
            found.extend(new)
            logger.info("Search %r: %d pdf link(s), %d new", query, len(links), len(new))
            if len(found) >= TARGET_PDF_COUNT:
                break
        return found

    async def _request_extraction(
        self,
        client: httpx.AsyncClient,
        pdf_url: str,
        manufacturer: Manufacturer,
        segments: ParsedSegments,
        search_terms: list[str],
    ) -> None:
        payload = {
            "pdf_url": pdf_url,
            "product_name": search_terms[0] if search_terms else "Unknown",
            "order_number": segments.program_number or (search_terms[0] if search_terms else ""),
            "manufacturer": manufacturer_source(manufacturer),
            "category": "unknown",
        }
        try:
            response = await client.post(
                self.extraction_url,
                headers={"Authorization": f"Bearer {self.extraction_service_key}",
                         "Content-Type": "application/json"},
                json=payload,
            )
            logger.info("Extraction requested for %s: HTTP %d", pdf_url, response.status_code)
        except httpx.HTTPError as e:
            logger.warning("Extraction request failed for %s: %s", pdf_url, e)
