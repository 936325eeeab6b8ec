"""Enrichment pipeline for imported tabs.

For every imported record: extract readable page content, summarize it when
no summary exists, compose passage text and store its embedding. Provider
calls (Jina Reader, Gemini, Jina embeddings) all go through the rate-limited
gateway.

Degradation
- Extraction or summarization failures are logged and skipped; the record is
  still embedded from its title, summary or URL
- Only a failure to persist marks the record failed
- A vector from the embedding fallback is stored flagged;
  ``TabEnricher.regenerate_embeddings`` replaces it once the provider is back
"""

import json
import re
from typing import Any, Dict, List, Optional

import httpx
import structlog

from ..common.config import EnrichmentConfig
from ..common.clock import Clock
from ..common.errors import ExternalAPIError, TabstashError
from ..embedding.client import PASSAGE_TASK, EmbeddingClient, EmbeddingResult, build_embedding_text
from ..gateway.rate_limiter import RateLimitGateway
from ..search.base import TabRecord
from .base import EnrichmentCollaborator, EnrichmentOutcome, EnrichmentStore
from .retry_handler import RetryConfig, RetryHandler

logger = structlog.get_logger("ingest.enrichment")

CONTENT_EXTRACTION_SERVICE = "content-extraction"
SUMMARY_SERVICE = "gemini"

_WHITESPACE = re.compile(r"\s+")
_CODE_FENCE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)
_FIRST_SENTENCE = re.compile(r"^(.+?[.!?])(\s|$)", re.DOTALL)


def clean_text_content(content: Optional[str], max_chars: int = 8000) -> str:
    """Collapse whitespace and cap length, preferring a sentence boundary.

    When the cut would land past 80% of ``max_chars`` on a ``". "`` boundary
    the text ends there; otherwise it is hard-truncated with ``"..."``.
    """
    if not content:
        return ""

    cleaned = _WHITESPACE.sub(" ", content).strip()
    if len(cleaned) <= max_chars:
        return cleaned

    truncated = cleaned[:max_chars]
    last_sentence = truncated.rfind(". ")
    if last_sentence > max_chars * 0.8:
        return truncated[:last_sentence + 1]
    return truncated + "..."


def _is_transient(error: BaseException) -> bool:
    if isinstance(error, ExternalAPIError):
        return error.status_code is None or error.status_code == 429 or error.status_code >= 500
    return False


class ContentExtractor:
    """Fetches readable page text through the Jina Reader API."""

    def __init__(
        self,
        config: EnrichmentConfig,
        gateway: RateLimitGateway,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Clock] = None,
    ):
        self.config = config
        self.gateway = gateway
        self.reader_url = config.tabstash_reader_url.rstrip("/")
        self.max_chars = config.tabstash_content_max_chars
        self.min_chars = config.tabstash_content_min_chars

        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            timeout=config.tabstash_reader_timeout_seconds,
            follow_redirects=True,
        )
        self.retry_handler = RetryHandler(
            RetryConfig(
                max_attempts=3,
                base_delay=1.0,
                max_delay=10.0,
                strategy="exponential",
                jitter=True,
                retryable_exceptions=(ExternalAPIError,),
                should_retry=_is_transient,
            ),
            clock=clock,
        )

    async def extract(self, url: str) -> Optional[str]:
        """Return cleaned page text, or ``None`` when nothing usable came back."""
        try:
            raw = await self.retry_handler.execute_with_retry(
                self.gateway.enqueue,
                CONTENT_EXTRACTION_SERVICE,
                lambda: self._fetch(url),
                operation_name="extract_content",
            )
        except TabstashError as e:
            logger.warning("Content extraction failed", url=url, error=str(e))
            return None

        content = clean_text_content(raw, self.max_chars)
        if len(content) < self.min_chars:
            logger.debug("Extracted content too short", url=url, length=len(content))
            return None

        logger.debug("Content extracted", url=url, length=len(content))
        return content

    async def _fetch(self, url: str) -> str:
        headers = {"Accept": "text/plain", "X-Return-Format": "text"}
        if self.config.tabstash_reader_api_key:
            headers["Authorization"] = f"Bearer {self.config.tabstash_reader_api_key}"

        try:
            response = await self.http_client.get(f"{self.reader_url}/{url}", headers=headers)
        except httpx.HTTPError as e:
            raise ExternalAPIError(f"Content extraction request failed: {e}") from e

        if not response.is_success:
            raise ExternalAPIError(
                f"Content extraction returned {response.status_code}",
                status_code=response.status_code,
            )
        return response.text

    async def close(self) -> None:
        if self._owns_http_client:
            await self.http_client.aclose()


class Summarizer:
    """Short page summaries from the Gemini ``generateContent`` API."""

    def __init__(
        self,
        config: EnrichmentConfig,
        gateway: RateLimitGateway,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self.gateway = gateway
        self.api_url = config.tabstash_gemini_api_url
        self.api_key = config.tabstash_gemini_api_key
        self.max_chars = config.tabstash_summary_max_chars

        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=30.0)

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def summarize(self, url: str, content: str) -> Optional[str]:
        """Return a 30-50 word summary, or ``None`` if unavailable."""
        if not self.enabled:
            return None

        try:
            text = await self.gateway.enqueue(SUMMARY_SERVICE, lambda: self._generate(url, content), priority=1)
        except TabstashError as e:
            logger.warning("Summary generation failed", url=url, error=str(e))
            return None

        summary = self.parse_summary(text)
        return summary[: self.max_chars] if summary else None

    async def _generate(self, url: str, content: str) -> str:
        prompt = (
            "Summarize the following web page in 30-50 words.\n"
            'Respond as JSON: {"summary": "..."}\n\n'
            f"URL: {url}\n\nPage Content: {content[:6000]}"
        )
        payload: Dict[str, Any] = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {"temperature": 0.3, "maxOutputTokens": 300},
        }

        try:
            response = await self.http_client.post(
                self.api_url,
                json=payload,
                headers={"x-goog-api-key": self.api_key, "Content-Type": "application/json"},
            )
        except httpx.HTTPError as e:
            raise ExternalAPIError(f"Summary request failed: {e}") from e

        if not response.is_success:
            raise ExternalAPIError(f"Summary API returned {response.status_code}", status_code=response.status_code)

        try:
            body = response.json()
            return body["candidates"][0]["content"]["parts"][0]["text"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ExternalAPIError("Invalid response structure from summary API") from e

    @staticmethod
    def parse_summary(text: Optional[str]) -> Optional[str]:
        """Pull the summary out of a JSON reply, else take the first sentence."""
        if not text:
            return None

        cleaned = _CODE_FENCE.sub("", text).strip()
        try:
            data = json.loads(cleaned)
        except ValueError:
            data = None

        if isinstance(data, dict) and isinstance(data.get("summary"), str) and data["summary"].strip():
            return data["summary"].strip()

        match = _FIRST_SENTENCE.match(cleaned)
        sentence = match.group(1) if match else cleaned
        return sentence.strip() or None

    async def close(self) -> None:
        if self._owns_http_client:
            await self.http_client.aclose()


class TabEnricher(EnrichmentCollaborator):
    """Extract, summarize, embed and persist imported tabs."""

    def __init__(
        self,
        store: EnrichmentStore,
        embedding_client: EmbeddingClient,
        extractor: Optional[ContentExtractor] = None,
        summarizer: Optional[Summarizer] = None,
    ):
        self.store = store
        self.embedding_client = embedding_client
        self.extractor = extractor
        self.summarizer = summarizer

    async def enrich(self, user_id: str, record_ids: List[str], job_id: Optional[str] = None) -> EnrichmentOutcome:
        outcome = EnrichmentOutcome()
        records = {r.id: r for r in await self.store.get_records(record_ids)}

        for record_id in record_ids:
            record = records.get(record_id)
            if record is None:
                outcome.failed += 1
                outcome.errors.append(f"{record_id}: record not found")
                continue

            content = await self.extractor.extract(record.url) if self.extractor else None
            if await self._embed_and_store(record, content, outcome, job_id) is not None:
                outcome.processed += 1

        logger.info(
            "Enrichment batch finished",
            job_id=job_id,
            user_id=user_id,
            processed=outcome.processed,
            failed=outcome.failed,
        )
        return outcome

    async def regenerate_embeddings(self, user_id: str, limit: int = 10) -> EnrichmentOutcome:
        """Re-embed up to ``limit`` records that have no embedding or a fallback one.

        Saved page content is reused; the page is only fetched when none was
        stored. A record that falls back again stays flagged and counts as
        failed.
        """
        outcome = EnrichmentOutcome()
        records = await self.store.list_records_needing_embedding(user_id, limit)

        for record in records:
            content = record.content
            if content is None and self.extractor is not None:
                content = await self.extractor.extract(record.url)

            result = await self._embed_and_store(record, content, outcome)
            if result is None:
                continue
            if result.is_fallback:
                outcome.failed += 1
                outcome.errors.append(f"{record.url}: embedding provider unavailable")
            else:
                outcome.processed += 1

        logger.info(
            "Embedding regeneration finished",
            user_id=user_id,
            candidates=len(records),
            updated=outcome.processed,
            failed=outcome.failed,
        )
        return outcome

    async def _embed_and_store(
        self,
        record: TabRecord,
        content: Optional[str],
        outcome: EnrichmentOutcome,
        job_id: Optional[str] = None,
    ) -> Optional[EmbeddingResult]:
        """Summarize if needed, embed and persist; ``None`` when the write failed."""
        summary = record.summary
        if content and not summary and self.summarizer is not None:
            summary = await self.summarizer.summarize(record.url, content)

        text = build_embedding_text(record.title, summary, content, record.url)
        result = await self.embedding_client.generate(text, PASSAGE_TASK)

        try:
            await self.store.update_enrichment(
                record.id,
                content=content,
                summary=summary,
                embedding=result.vector,
                embedding_fallback=result.is_fallback,
            )
        except Exception as e:
            logger.error("Failed to persist enrichment", job_id=job_id, record_id=record.id, error=str(e))
            outcome.failed += 1
            outcome.errors.append(f"{record.url}: {e}")
            return None

        return result
