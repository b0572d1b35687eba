from __future__ import annotations

import httpx
import pytest

import pub_archive.shared.http as http_module
from pub_archive.ingest.html_client import HtmlSiteClient, extract_pub_slugs, parse_pub_html
from pub_archive.ingest.normalize import RecordNormalizer
from pub_archive.shared.http import RetryPolicy

LISTING_0 = """
<html><body>
  <a href="/pub/alpha">Alpha</a>
  <a href="https://community.example.org/pub/beta/release/2">Beta release</a>
  <a href="/pub/beta">Beta</a>
  <a href="/pub/alpha/draft">Alpha draft</a>
  <a href="/about">About</a>
</body></html>
"""

LISTING_50 = '<html><body><a href="/pub/alpha">Alpha</a><a href="/pub/gamma">Gamma</a></body></html>'

LISTING_100 = '<html><body><a href="/pub/gamma">Gamma</a></body></html>'


def _article(title: str, published: str, *, modified: str | None = None) -> str:
    modified_tag = f'<meta property="article:modified_time" content="{modified}">' if modified else ""
    return f"""
    <html><head>
      <meta name="citation_title" content="{title}">
      <meta name="citation_author" content="Ada Lovelace">
      <meta name="citation_author" content="Alan Turing">
      <meta name="citation_doi" content="10.1234/example">
      <meta name="citation_publication_date" content="{published}">
      <meta name="citation_keywords" content="policing; courts">
      <meta name="citation_pdf_url" content="https://assets.example.org/{title}.pdf">
      <meta name="description" content="An abstract about {title}.">
      {modified_tag}
    </head><body><h1>Heading {title}</h1></body></html>
    """


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(http_module.time, "sleep", lambda seconds: None)


def _client(handler) -> HtmlSiteClient:
    return HtmlSiteClient(
        community_url="https://community.example.org",
        request_delay_seconds=0,
        policy=RetryPolicy(max_attempts=2, backoff_start_seconds=0, backoff_cap_seconds=0),
        transport=httpx.MockTransport(handler),
    )


def test_extract_pub_slugs_skips_releases_and_drafts() -> None:
    assert extract_pub_slugs(LISTING_0) == ["alpha", "beta"]


def test_parse_pub_html_maps_citation_meta() -> None:
    raw = parse_pub_html("alpha", _article("alpha", "2024-02-03"))

    assert raw["id"] == "alpha"
    assert raw["title"] == "alpha"
    assert raw["doi"] == "10.1234/example"
    assert raw["createdAt"] == "2024-02-03"
    assert raw["updatedAt"] == "2024-02-03"
    assert raw["labels"] == ["policing", "courts"]
    assert [a["name"] for a in raw["attributions"]] == ["Ada Lovelace", "Alan Turing"]

    record = RecordNormalizer(site_base_url="https://community.example.org").normalize(raw)
    assert record.description == "An abstract about alpha."
    assert record.pdf_url == "https://assets.example.org/alpha.pdf"
    assert record.author_count == 2
    assert record.published_at == "2024-02-03"


def test_parse_pub_html_falls_back_to_heading_and_modified_time() -> None:
    html = (
        '<html><head><meta property="article:modified_time" content="2024-05-01"></head>'
        "<body><h1>  Only   a heading </h1></body></html>"
    )

    raw = parse_pub_html("solo", html)

    assert raw["title"] == "Only a heading"
    assert raw["updatedAt"] == "2024-05-01"
    assert raw["downloads"] == []


def test_iter_pub_pages_walks_listing_until_no_new_slugs() -> None:
    listing = {"": LISTING_0, "50": LISTING_50, "100": LISTING_100}
    fetched: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.startswith("/pub/"):
            slug = request.url.path.split("/pub/", 1)[1]
            fetched.append(slug)
            return httpx.Response(200, text=_article(slug, "2024-01-01"))
        return httpx.Response(200, text=listing[request.url.params.get("offset", "")])

    with _client(handler) as client:
        pages = list(client.iter_pub_pages())

    assert [[r["slug"] for r in page.records] for page in pages] == [["alpha", "beta"], ["gamma"]]
    assert fetched == ["alpha", "beta", "gamma"]
    assert client.report.stop_reason == "completed"


def test_iter_pub_pages_skips_failed_articles_and_filters_since() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/pub/alpha":
            return httpx.Response(404)
        if request.url.path == "/pub/beta":
            return httpx.Response(200, text=_article("beta", "2023-01-01"))
        if request.url.params.get("offset"):
            return httpx.Response(200, text="<html></html>")
        return httpx.Response(200, text=LISTING_0)

    with _client(handler) as client:
        skipped = list(client.iter_pub_pages())
        filtered = list(client.iter_pub_pages(since="2024-01-01"))

    assert [r["slug"] for page in skipped for r in page.records] == ["beta"]
    assert filtered == []
    assert client.report.stop_reason == "completed"


def test_listing_failure_is_reported() -> None:
    with _client(lambda request: httpx.Response(503)) as client:
        pages = list(client.iter_pub_pages())

    assert pages == []
    assert client.report.stop_reason == "exhausted"
