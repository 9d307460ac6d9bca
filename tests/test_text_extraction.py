import pytest

from prospect_research.schemas.research import ResearchSource
from prospect_research.utils.text_extraction import (
    clean_snippet,
    dedupe_sources,
    extract_metrics,
    extract_urls,
    extract_valuation_observations,
    mentions_not_found,
    parse_dollar_amount,
)
from prospect_research.utils.url_canonicalizer import canonicalize_url

REPORT = """
## Jane Doe (Austin, TX)
- Zillow Zestimate: $850,000 (https://www.zillow.com/homes/1-elm-st).
- Assessed value: $790,000 per the county assessor
- **Estimated Net Worth:** $2M-$5M [Estimated]
- Gift Capacity: $50K-$100K
- Capacity Rating: PRINCIPAL
- RomyScore: 24/41 — Mid-Capacity Growth
- Recommended Ask: $25,000
"""


@pytest.mark.unit
@pytest.mark.parametrize(
    "text,expected",
    [
        ("$1.5M", 1_500_000),
        ("500K", 500_000),
        ("3 million", 3_000_000),
        ("under $1M", 1_000_000),
        ("$500K-$1M", 1_000_000),
        ("N/A", None),
        ("", None),
    ],
)
def test_parse_dollar_amount(text, expected):
    assert parse_dollar_amount(text) == expected


@pytest.mark.unit
def test_extract_metrics_from_report():
    metrics = extract_metrics(REPORT)

    assert metrics.romy_score == 24
    assert metrics.romy_score_tier == "Mid-Capacity Growth"
    assert metrics.capacity_rating == "PRINCIPAL"
    assert metrics.estimated_net_worth == 5_000_000
    assert metrics.estimated_gift_capacity == 100_000
    assert metrics.recommended_ask == 25_000


@pytest.mark.unit
def test_extract_valuation_observations_tags_sources():
    observations = extract_valuation_observations(REPORT)

    assert [(o.category, o.source, o.value) for o in observations] == [
        ("online", "zillow", 850_000),
        ("hedonic", "assessor", 790_000),
    ]


@pytest.mark.unit
def test_urls_and_canonical_keys():
    assert extract_urls(REPORT) == ["https://www.zillow.com/homes/1-elm-st"]
    assert canonicalize_url("https://WWW.Example.com/a/?b=2&a=1#frag") == "example.com/a?a=1&b=2"
    assert canonicalize_url("example.com/path/") == "example.com/path"
    with pytest.raises(ValueError):
        canonicalize_url("   ")


@pytest.mark.unit
def test_dedupe_sources_cleans_snippets_and_labels():
    sources = dedupe_sources(
        [
            ResearchSource(name="", url="https://www.example.com/a", snippet="<p>Owner of <b>Doe Ranch</b></p>"),
            ResearchSource(name="dup", url="http://example.com/a/"),
            ResearchSource(name="Other", url="https://other.org/x"),
        ],
        limit=5,
    )

    assert [s.url for s in sources] == ["https://www.example.com/a", "https://other.org/x"]
    assert sources[0].name == "example.com"
    assert sources[0].snippet == "Owner of Doe Ranch"


@pytest.mark.unit
def test_clean_snippet_truncates_plain_text():
    assert clean_snippet("a   b\n c") == "a b c"
    assert clean_snippet("x" * 500, limit=10) == "x" * 10
    assert clean_snippet(None) is None


@pytest.mark.unit
def test_mentions_not_found():
    assert mentions_not_found("Business: Not found in public records")
    assert mentions_not_found("We were unable to locate any filings")
    assert not mentions_not_found("Owns three properties")
