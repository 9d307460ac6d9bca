"""Heuristic extraction of dollar amounts, URLs and report metrics from free text.

Everything here is a pure function of its input text. Research backends
return prose with inline citations; these helpers turn that prose into
structured values.
"""

from __future__ import annotations

import re
from typing import Iterable, List, Optional, Tuple
from urllib.parse import urlsplit

from bs4 import BeautifulSoup

from prospect_research.schemas.research import ProspectMetrics, ResearchSource, ValuationObservation
from prospect_research.utils.url_canonicalizer import canonicalize_url, strip_trailing_punctuation

MAX_SOURCES = 20
MAX_SNIPPET_CHARS = 300

_MULTIPLIERS = {
    "k": 1_000.0,
    "thousand": 1_000.0,
    "m": 1_000_000.0,
    "mm": 1_000_000.0,
    "million": 1_000_000.0,
    "b": 1_000_000_000.0,
    "billion": 1_000_000_000.0,
}

_NUMBER = r"(\d[\d,]*(?:\.\d+)?)\s*(million|billion|thousand|mm|[mkb])?\b"
_NOT_AVAILABLE_RE = re.compile(r"^(n/a|none|tbd|unknown|not\s+available)", re.I)
_UNDER_RE = re.compile(r"(?:under|less\s+than|below)\s*\$?\s*" + _NUMBER, re.I)
_LT_RE = re.compile(r"<\s*\$?\s*" + _NUMBER, re.I)
_GT_RE = re.compile(r">\s*\$?\s*" + _NUMBER, re.I)
_RANGE_RE = re.compile(r"\$?\s*" + _NUMBER + r"\s*(?:-|–|—|to)\s*\$?\s*" + _NUMBER, re.I)
_PLAIN_RE = re.compile(r"\$?\s*" + _NUMBER, re.I)
_DOLLAR_RE = re.compile(
    r"\$\s*" + _NUMBER + r"(?:\s*(?:-|–|—|to)\s*\$?\s*" + _NUMBER + r")?",
    re.I,
)

_URL_RE = re.compile(r"https?://[^\s<>\"'`\]\)]+", re.I)

_NOT_FOUND_RE = re.compile(
    r"(not\s+found\s+in\s+public\s+records"
    r"|no\s+(?:public\s+)?(?:records|information|data|results)\s+(?:were\s+|was\s+)?found"
    r"|(?:could|was)\s+not\s+(?:be\s+)?(?:find|found|locate|located)"
    r"|unable\s+to\s+(?:find|locate|verify))",
    re.I,
)


def _to_value(number: str, suffix: Optional[str]) -> Optional[float]:
    try:
        value = float(number.replace(",", ""))
    except ValueError:
        return None
    if suffix:
        value *= _MULTIPLIERS.get(suffix.lower(), 1.0)
    return value


def parse_dollar_amount(text: Optional[str]) -> Optional[float]:
    """Parse one dollar figure out of a short phrase.

    Handles suffixes ($1.5M, 500K, $2B, "3 million"), bounds ("under $1M",
    "<$1K", ">$5M") and ranges ("$500K-$1M" yields the upper value).
    Returns None for N/A-style answers or when no number is present.
    """
    if not text:
        return None
    cleaned = text.replace("*", "").strip()
    if not cleaned or _NOT_AVAILABLE_RE.match(cleaned):
        return None

    for pattern in (_UNDER_RE, _LT_RE, _GT_RE):
        match = pattern.search(cleaned)
        if match:
            return _to_value(match.group(1), match.group(2))

    match = _RANGE_RE.search(cleaned)
    if match:
        return _to_value(match.group(3), match.group(4))

    match = _PLAIN_RE.search(cleaned)
    if match:
        return _to_value(match.group(1), match.group(2))
    return None


def find_dollar_values(text: str) -> List[float]:
    """Every $-prefixed figure in text; a range contributes its midpoint."""
    values: List[float] = []
    for match in _DOLLAR_RE.finditer(text or ""):
        low = _to_value(match.group(1), match.group(2))
        if low is None:
            continue
        if match.group(3):
            high = _to_value(match.group(3), match.group(4) or match.group(2))
            if high is not None:
                values.append((low + high) / 2)
                continue
        values.append(low)
    return values


def extract_urls(text: str) -> List[str]:
    """Return URLs in order of appearance, trailing punctuation removed."""
    return [strip_trailing_punctuation(match.group(0)) for match in _URL_RE.finditer(text or "")]


def _domain_label(url: str) -> str:
    host = (urlsplit(url).hostname or url).lower()
    return host[4:] if host.startswith("www.") else host


def clean_snippet(snippet: Optional[str], limit: int = MAX_SNIPPET_CHARS) -> Optional[str]:
    """Plain text of a source snippet; search APIs sometimes return HTML fragments."""
    if not snippet:
        return None
    text = snippet
    if "<" in text and ">" in text:
        soup = BeautifulSoup(text, "html.parser")
        for tag in soup.find_all(["script", "style", "noscript"]):
            tag.decompose()
        text = soup.get_text(" ", strip=True)
    text = re.sub(r"\s+", " ", text).strip()
    return text[:limit] or None


def dedupe_sources(sources: Iterable[ResearchSource], limit: int = MAX_SOURCES) -> List[ResearchSource]:
    """Keep the first source per normalized URL, capped at limit."""
    seen: set[str] = set()
    unique: List[ResearchSource] = []
    for source in sources:
        try:
            key = canonicalize_url(source.url)
        except ValueError:
            continue
        if key in seen:
            continue
        seen.add(key)
        snippet = clean_snippet(source.snippet)
        unique.append(ResearchSource(name=source.name or _domain_label(source.url), url=source.url, snippet=snippet))
        if len(unique) >= limit:
            break
    return unique


def sources_from_text(text: str, limit: int = MAX_SOURCES) -> List[ResearchSource]:
    """Fallback source extraction when a backend returns no citation annotations."""
    return dedupe_sources(
        (ResearchSource(name=_domain_label(url), url=url) for url in extract_urls(text)),
        limit=limit,
    )


def mentions_not_found(text: str) -> bool:
    return bool(_NOT_FOUND_RE.search(text or ""))


_SCORE_PATTERNS = [
    re.compile(r"R[oō]myScore[™]?\s*[:=]\s*\**(\d+)\s*/\s*41", re.I),
    re.compile(r"\*\*R[oō]myScore[™]?\*\*\s*[:=]?\s*\**(\d+)\s*/\s*41", re.I),
    re.compile(r"R[oō]myScore[™]?[:\s]*\**(\d+)\**\s*/\s*41", re.I),
    re.compile(r"(\d+)\s*/\s*41\s*(?:points?)?", re.I),
]
_TIER_PATTERNS = [
    re.compile(r"\d+\s*/\s*41\s*[—–-]+\s*\**([A-Za-z][A-Za-z\s-]+?)(?:\*|\n|$)", re.I),
    re.compile(r"Score\s*Tier[:\s]*\**([A-Za-z][A-Za-z\s-]+?)(?:\*|\n|\||$)", re.I),
    re.compile(r"(Transformational|High-Capacity Major|High-Capacity|Mid-Capacity Growth|Mid-Capacity|Emerging)", re.I),
]
_CAPACITY_PATTERNS = [
    re.compile(r"Capacity\s*Rating[:\s]*\**\[?\s*(MAJOR|PRINCIPAL|LEADERSHIP|ANNUAL)\b", re.I),
    re.compile(r"\*\*\[?\s*(MAJOR|PRINCIPAL|LEADERSHIP|ANNUAL)\s*\]?\*\*", re.I),
    re.compile(r"\b(MAJOR|PRINCIPAL|LEADERSHIP|ANNUAL)\s*(?:Gift\s*)?Prospect", re.I),
]
_NET_WORTH_PATTERNS = [
    re.compile(r"TOTAL\s*(?:ESTIMATED\s*)?NET\s*WORTH[^|\n:]*[:|]\s*\**\s*([^\n|]+)", re.I),
    re.compile(r"Estimated\s*Net\s*Worth[:\s*]*([^\n|]+)", re.I),
    re.compile(r"Net\s*Worth[:\s|*]*([^\n|]+)", re.I),
]
_GIFT_CAPACITY_PATTERNS = [
    re.compile(r"(?:Est\.?\s*)?Gift\s*Capacity[:\s|*]*([^\n|]+)", re.I),
    re.compile(r"Giving\s*Capacity[:\s|*]*([^\n|]+)", re.I),
    re.compile(r"Charitable\s*Capacity[:\s|*]*([^\n|]+)", re.I),
]
_ASK_PATTERNS = [
    re.compile(r"Recommended\s*Ask[:\s*]*([^\n|]+)", re.I),
    re.compile(r"Ask\s*Amount[:\s*]*([^\n|]+)", re.I),
    re.compile(r"(?:Suggested|Initial)\s*Ask[:\s*]*([^\n|]+)", re.I),
]


def _first_amount(patterns: List[re.Pattern], content: str) -> Optional[float]:
    for pattern in patterns:
        match = pattern.search(content)
        if not match:
            continue
        value = parse_dollar_amount(match.group(1))
        if value is not None and value > 0:
            return value
    return None


def extract_metrics(content: str) -> ProspectMetrics:
    """Pull score, tier, capacity rating and dollar metrics out of a report."""
    metrics = ProspectMetrics()
    if not content:
        return metrics

    for pattern in _SCORE_PATTERNS:
        match = pattern.search(content)
        if match:
            score = int(match.group(1))
            if 0 <= score <= 41:
                metrics.romy_score = score
                break

    for pattern in _TIER_PATTERNS:
        match = pattern.search(content)
        if match:
            tier = match.group(1).replace("*", "").strip()
            if len(tier) > 2:
                metrics.romy_score_tier = tier
                break

    for pattern in _CAPACITY_PATTERNS:
        match = pattern.search(content)
        if match:
            metrics.capacity_rating = match.group(1).upper()
            break

    metrics.estimated_net_worth = _first_amount(_NET_WORTH_PATTERNS, content)
    metrics.estimated_gift_capacity = _first_amount(_GIFT_CAPACITY_PATTERNS, content)
    metrics.recommended_ask = _first_amount(_ASK_PATTERNS, content)
    return metrics


# (category, source label, pattern) checked per line, first match wins
_VALUATION_LABELS: List[Tuple[str, str, re.Pattern]] = [
    ("online", "zillow", re.compile(r"zestimate|zillow", re.I)),
    ("online", "redfin", re.compile(r"redfin", re.I)),
    ("online", "realtor.com", re.compile(r"realtor\.com", re.I)),
    ("comparable", "comparable_sales", re.compile(r"comparable|\bcomps?\b|sold\s+for|recent\s+sale", re.I)),
    ("hedonic", "assessor", re.compile(r"assess(?:ed|or|ment)|tax\s+value|appraised", re.I)),
    ("online", "online_estimate", re.compile(r"online\s+estimate|estimated\s+(?:home|property)\s+value", re.I)),
]


def extract_valuation_observations(content: str) -> List[ValuationObservation]:
    """Tag property-value figures by the kind of source each line cites."""
    observations: List[ValuationObservation] = []
    for line in (content or "").splitlines():
        for category, label, pattern in _VALUATION_LABELS:
            match = pattern.search(line)
            if not match:
                continue
            for value in find_dollar_values(line[match.start():]):
                if value >= 10_000:
                    observations.append(ValuationObservation(category=category, value=value, source=label))
            break
    return observations
