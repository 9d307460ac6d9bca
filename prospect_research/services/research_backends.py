"""
Research backends for batch prospect research.

Each backend turns one prospect into a cited prose answer. HTTP failures are
translated into TransientBackendError / PermanentBackendError so the retry
envelope can decide what to retry.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

import httpx

from prospect_research.core.config import BackendConfig
from prospect_research.schemas.batch import ProspectInput
from prospect_research.schemas.research import ResearchSource
from prospect_research.services.retry_policy import (
    TRANSIENT_STATUS_CODES,
    PermanentBackendError,
    TransientBackendError,
    parse_retry_after,
)
from prospect_research.utils.text_extraction import dedupe_sources, sources_from_text

logger = logging.getLogger(__name__)


@dataclass
class BackendResponse:
    """Raw answer from one backend, before merging."""

    backend: str
    answer: str
    sources: List[ResearchSource] = field(default_factory=list)
    tokens_used: int = 0
    model: Optional[str] = None
    query: Optional[str] = None


class ResearchBackend(Protocol):
    name: str

    async def search(self, prospect: ProspectInput, *, enable_web_search: bool = True) -> BackendResponse: ...


def build_research_query(prospect: ProspectInput) -> str:
    """Topic-sectioned research brief that asks for cited facts and explicit gaps."""
    location = ", ".join(part for part in (prospect.city, prospect.state) if part)
    professional = " at ".join(part for part in (prospect.title, prospect.employer) if part)
    name_parts = prospect.name.split()
    searchable_name = f"{name_parts[0]} {name_parts[-1]}" if len(name_parts) > 2 else prospect.name

    identity = [f"- Full name: {prospect.name}", f"- Search variant: {searchable_name}"]
    if prospect.full_address or prospect.address:
        identity.append(f"- Address: {prospect.full_address or prospect.address}")
    if location:
        identity.append(f"- Location: {location}")
    if professional:
        identity.append(f"- Professional: {professional}")

    return "\n".join(
        [
            f'PROSPECT RESEARCH: "{prospect.name}"',
            "",
            "IDENTITY CONTEXT (use for disambiguation):",
            *identity,
            "",
            "Research each topic and cite a source URL inline for every fact:",
            "1. REAL ESTATE: owned properties, assessed values, online estimates (Zillow, Redfin), recent comparable sales.",
            "2. BUSINESS AFFILIATIONS: companies, roles, ownership, exits.",
            "3. SECURITIES FILINGS: SEC Form 3/4/DEF 14A insider status and holdings.",
            "4. PHILANTHROPY: foundation roles, disclosed gifts, political giving (FEC).",
            "5. BIOGRAPHY: age, education, career highlights.",
            "6. TIMING SIGNALS: liquidity events, retirements, relocations.",
            "",
            "Finish with: Estimated Net Worth, Gift Capacity, Capacity Rating (MAJOR/PRINCIPAL/LEADERSHIP/ANNUAL),",
            "RomyScore: X/41 with its tier, and Recommended Ask.",
            "Use dollar ranges, mark uncertain items [Estimated], and write 'Not found in public records'",
            "for any topic with no evidence rather than guessing.",
        ]
    )


def _estimate_tokens(*texts: str) -> int:
    return max(1, sum(len(text or "") for text in texts) // 4)


class HttpBackend:
    """Shared HTTP plumbing: error translation and optional shared client."""

    name = "http"

    def __init__(self, *, client: Optional[httpx.AsyncClient] = None, timeout: float = 45.0):
        self.client = client
        self.timeout = timeout

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self.client is not None:
            yield self.client
            return
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            yield client

    async def _post_json(self, url: str, body: Dict[str, Any], headers: Dict[str, str]) -> Dict[str, Any]:
        try:
            async with self._client() as client:
                resp = await client.post(url, json=body, headers=headers, timeout=self.timeout)
        except httpx.TimeoutException as exc:
            raise TransientBackendError(f"{self.name} request timed out", backend=self.name) from exc
        except httpx.TransportError as exc:
            raise TransientBackendError(f"{self.name} connection error: {exc}", backend=self.name) from exc

        if resp.status_code in TRANSIENT_STATUS_CODES:
            raise TransientBackendError(
                f"{self.name} returned HTTP {resp.status_code}",
                backend=self.name,
                status_code=resp.status_code,
                retry_after=parse_retry_after(resp.headers.get("Retry-After")),
            )
        if resp.status_code >= 400:
            raise PermanentBackendError(
                f"{self.name} returned HTTP {resp.status_code}: {resp.text[:200]}",
                backend=self.name,
                status_code=resp.status_code,
            )
        try:
            payload = resp.json()
        except ValueError as exc:
            raise PermanentBackendError(f"{self.name} returned malformed JSON", backend=self.name) from exc
        if not isinstance(payload, dict):
            raise PermanentBackendError(f"{self.name} returned unexpected payload", backend=self.name)
        return payload


class OpenRouterSearchBackend(HttpBackend):
    """Search-augmented chat completion through OpenRouter (Sonar, Grok with the web plugin)."""

    def __init__(
        self,
        *,
        name: str,
        model: str,
        api_key: Optional[str],
        base_url: str = "https://openrouter.ai/api/v1",
        use_web_plugin: bool = False,
        max_output_tokens: int = 4000,
        app_url: str = "http://localhost:8000",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 45.0,
    ):
        super().__init__(client=client, timeout=timeout)
        self.name = name
        self.model = model
        self.api_key = api_key
        self.endpoint = f"{base_url.rstrip('/')}/chat/completions"
        self.use_web_plugin = use_web_plugin
        self.max_output_tokens = max_output_tokens
        self.app_url = app_url

    def _build_request_body(self, query: str, enable_web_search: bool) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "user", "content": query}],
            "max_tokens": self.max_output_tokens,
            "temperature": 0.1,
        }
        if self.use_web_plugin and enable_web_search:
            body["plugins"] = [{"id": "web", "engine": "native"}]
        return body

    @staticmethod
    def _parse_sources(payload: Dict[str, Any], message: Dict[str, Any], answer: str) -> List[ResearchSource]:
        annotated: List[ResearchSource] = []
        for annotation in message.get("annotations") or payload.get("annotations") or []:
            citation = annotation.get("url_citation") if isinstance(annotation, dict) else None
            citation = citation or annotation
            if not isinstance(citation, dict) or not citation.get("url"):
                continue
            annotated.append(
                ResearchSource(
                    name=citation.get("title") or "",
                    url=citation["url"],
                    snippet=citation.get("content"),
                )
            )
        for url in payload.get("citations") or []:
            if isinstance(url, str):
                annotated.append(ResearchSource(name="", url=url))
        if annotated:
            return dedupe_sources(annotated)
        return sources_from_text(answer)

    async def search(self, prospect: ProspectInput, *, enable_web_search: bool = True) -> BackendResponse:
        if not self.api_key:
            raise PermanentBackendError("OPENROUTER_API_KEY not configured", backend=self.name)

        query = build_research_query(prospect)
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": self.app_url,
            "X-Title": "Batch Prospect Research",
        }
        payload = await self._post_json(self.endpoint, self._build_request_body(query, enable_web_search), headers)

        choices = payload.get("choices") or []
        message = (choices[0].get("message") if choices else None) or {}
        answer = message.get("content")
        if not isinstance(answer, str) or not answer.strip():
            raise PermanentBackendError(f"{self.name} returned an empty answer", backend=self.name)

        usage = payload.get("usage") or {}
        return BackendResponse(
            backend=self.name,
            answer=answer,
            sources=self._parse_sources(payload, message, answer),
            tokens_used=int(usage.get("total_tokens") or _estimate_tokens(query, answer)),
            model=payload.get("model") or self.model,
            query=query,
        )


class LinkupSearchBackend(HttpBackend):
    """Linkup sourced-answer search."""

    name = "linkup"

    def __init__(
        self,
        *,
        api_key: Optional[str],
        base_url: str = "https://api.linkup.so/v1",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        super().__init__(client=client, timeout=timeout)
        self.api_key = api_key
        self.endpoint = f"{base_url.rstrip('/')}/search"

    async def search(self, prospect: ProspectInput, *, enable_web_search: bool = True) -> BackendResponse:
        if not self.api_key:
            raise PermanentBackendError("LINKUP_API_KEY not configured", backend=self.name)

        query = build_research_query(prospect)
        payload = await self._post_json(
            self.endpoint,
            {"q": query, "depth": "standard", "outputType": "sourcedAnswer", "includeImages": False},
            {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
        )
        answer = payload.get("answer")
        if not isinstance(answer, str) or not answer.strip():
            raise PermanentBackendError("linkup returned an empty answer", backend=self.name)

        sources = [
            ResearchSource(name=entry.get("name") or "", url=entry["url"], snippet=entry.get("snippet") or entry.get("content"))
            for entry in payload.get("sources") or []
            if isinstance(entry, dict) and entry.get("url")
        ]
        return BackendResponse(
            backend=self.name,
            answer=answer,
            sources=dedupe_sources(sources) if sources else sources_from_text(answer),
            tokens_used=_estimate_tokens(query, answer),
            model="linkup-standard",
            query=query,
        )


class FixtureSearchBackend:
    """Deterministic offline backend used when external providers are mocked."""

    name = "fixture"

    async def search(self, prospect: ProspectInput, *, enable_web_search: bool = True) -> BackendResponse:
        slug = "-".join(prospect.name.lower().split()) or "prospect"
        location = ", ".join(part for part in (prospect.city, prospect.state) if part) or "Unknown location"
        answer = "\n".join(
            [
                f"## {prospect.name} ({location})",
                f"- Property: {prospect.full_address or prospect.address or 'Not found in public records'}",
                f"  - Zillow Zestimate: $850,000 (https://fixtures.example.com/{slug}/zillow)",
                f"  - Redfin Estimate: $870,000 (https://fixtures.example.com/{slug}/redfin)",
                f"  - Assessed value: $790,000 (https://fixtures.example.com/{slug}/assessor)",
                "- Business: Not found in public records",
                "- Estimated Net Worth: $2M-$5M [Estimated]",
                "- Gift Capacity: $50K-$100K",
                "- Capacity Rating: PRINCIPAL",
                "- RomyScore: 24/41 — Mid-Capacity Growth",
                "- Recommended Ask: $25,000",
            ]
        )
        return BackendResponse(
            backend=self.name,
            answer=answer,
            sources=sources_from_text(answer),
            tokens_used=_estimate_tokens(answer),
            model="fixture-v1",
            query=build_research_query(prospect),
        )


def build_backends(
    config: BackendConfig,
    *,
    client: Optional[httpx.AsyncClient] = None,
    app_url: str = "http://localhost:8000",
) -> List[ResearchBackend]:
    """Instantiate the configured backends in priority order."""
    if config.mock_external_providers:
        return [FixtureSearchBackend()]

    backends: List[ResearchBackend] = []
    for key in config.backends:
        if key == "sonar":
            backends.append(
                OpenRouterSearchBackend(
                    name="sonar",
                    model=config.sonar_model,
                    api_key=config.openrouter_api_key,
                    base_url=config.openrouter_base_url,
                    max_output_tokens=config.max_output_tokens,
                    app_url=app_url,
                    client=client,
                    timeout=config.timeout_seconds,
                )
            )
        elif key == "grok":
            backends.append(
                OpenRouterSearchBackend(
                    name="grok",
                    model=config.grok_model,
                    api_key=config.openrouter_api_key,
                    base_url=config.openrouter_base_url,
                    use_web_plugin=True,
                    max_output_tokens=config.max_output_tokens,
                    app_url=app_url,
                    client=client,
                    timeout=config.timeout_seconds,
                )
            )
        elif key == "linkup":
            backends.append(
                LinkupSearchBackend(
                    api_key=config.linkup_api_key,
                    base_url=config.linkup_base_url,
                    client=client,
                    timeout=config.timeout_seconds,
                )
            )
        else:
            logger.warning("Unknown research backend %r ignored", key)
    return backends
