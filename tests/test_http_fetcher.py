"""Tests for the direct HTTP fetcher."""

import httpx
import pytest

from site_monitor.adapters.fetchers import HttpPageFetcher
from site_monitor.adapters.fetchers.http_fetcher import extract_links, parse_page
from site_monitor.core import FetchError, FetchOptions, MonitorType

SITE = {
    "/": """<html><head><title>Home</title></head><body>
        <a href="/a">A</a> <a href="/b/">B</a> <a href="https://other.example.org/x">Elsewhere</a>
        </body></html>""",
    "/a": '<html><head><title>A</title></head><body><p>Page A</p><a href="/a/deep">Deep</a></body></html>',
    "/a/deep": "<html><body><p>Deep page</p></body></html>",
}


def site_handler(request: httpx.Request) -> httpx.Response:
    if request.url.host != "example.com":
        return httpx.Response(500)
    if request.url.path == "/b":
        return httpx.Response(500)
    if request.url.path == "/notes.txt":
        return httpx.Response(200, text="plain notes", headers={"content-type": "text/plain"})
    if request.url.path == "/data":
        return httpx.Response(200, content=b"\x00\x01", headers={"content-type": "application/octet-stream"})
    body = SITE.get(request.url.path)
    if body is None:
        return httpx.Response(404)
    return httpx.Response(200, html=body)


@pytest.fixture
def fetcher() -> HttpPageFetcher:
    return HttpPageFetcher(transport=httpx.MockTransport(site_handler))


def crawl(depth: int, limit: int = 10) -> FetchOptions:
    return FetchOptions(mode=MonitorType.FULL_SITE, depth=depth, limit=limit)


def test_parse_page_extracts_text_and_metadata() -> None:
    html = """<html><head>
        <title> Pricing </title>
        <meta name="description" content="Our plans">
        <meta property="og:image" content="https://example.com/og.png">
        <style>body { color: red }</style>
        </head><body><h1>Plans</h1><script>track()</script><p>Pro: 12 EUR</p></body></html>"""

    capture = parse_page("https://Example.com/pricing/", html, 200)

    assert capture.url == "https://example.com/pricing"
    assert capture.title == "Pricing"
    assert capture.description == "Our plans"
    assert capture.og_image == "https://example.com/og.png"
    assert capture.markdown == "Plans\nPro: 12 EUR"
    assert capture.status_code == 200


def test_extract_links_keeps_same_host_pages() -> None:
    html = """<body>
        <a href="/about">About</a>
        <a href="/about/#team">Team</a>
        <a href="https://EXAMPLE.com/blog">Blog</a>
        <a href="https://other.example.org/">Other</a>
        <a href="/brochure.pdf">PDF</a>
        <a href="mailto:hi@example.com">Mail</a>
        <a href="#top">Top</a>
        </body>"""

    links = extract_links("https://example.com/", html)

    assert links == ["https://example.com/about", "https://example.com/blog"]


@pytest.mark.asyncio
async def test_single_page(fetcher: HttpPageFetcher) -> None:
    result = await fetcher.fetch("https://example.com/a", FetchOptions())

    [capture] = result.captures
    assert capture.ok
    assert capture.title == "A"
    assert "Page A" in capture.markdown
    assert result.truncated is False


@pytest.mark.asyncio
async def test_single_page_http_error(fetcher: HttpPageFetcher) -> None:
    with pytest.raises(FetchError) as exc_info:
        await fetcher.fetch("https://example.com/missing", FetchOptions())

    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
async def test_single_page_network_error() -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    fetcher = HttpPageFetcher(transport=httpx.MockTransport(refuse))

    with pytest.raises(FetchError, match="connection refused"):
        await fetcher.fetch("https://example.com/", FetchOptions())


@pytest.mark.asyncio
async def test_plain_text_and_unsupported_content(fetcher: HttpPageFetcher) -> None:
    text = await fetcher.fetch("https://example.com/notes.txt", FetchOptions())
    assert text.captures[0].markdown == "plain notes"

    with pytest.raises(FetchError, match="Unsupported content type"):
        await fetcher.fetch("https://example.com/data", FetchOptions())


@pytest.mark.asyncio
async def test_crawl_respects_depth(fetcher: HttpPageFetcher) -> None:
    shallow = await fetcher.fetch("https://example.com", crawl(depth=0))
    assert [c.url for c in shallow.captures] == ["https://example.com/"]

    one_hop = await fetcher.fetch("https://example.com", crawl(depth=1))
    assert [c.url for c in one_hop.captures] == [
        "https://example.com/",
        "https://example.com/a",
        "https://example.com/b",
    ]

    two_hops = await fetcher.fetch("https://example.com", crawl(depth=2))
    assert "https://example.com/a/deep" in [c.url for c in two_hops.captures]
    assert two_hops.truncated is False


@pytest.mark.asyncio
async def test_crawl_reports_failed_pages(fetcher: HttpPageFetcher) -> None:
    result = await fetcher.fetch("https://example.com", crawl(depth=1))

    failed = [c for c in result.captures if not c.ok]
    assert [(c.url, c.error) for c in failed] == [("https://example.com/b", "HTTP 500")]


@pytest.mark.asyncio
async def test_crawl_stops_at_limit(fetcher: HttpPageFetcher) -> None:
    result = await fetcher.fetch("https://example.com", crawl(depth=2, limit=2))

    assert len(result.captures) == 2
    assert result.truncated is True


@pytest.mark.asyncio
async def test_crawl_unreachable_origin(fetcher: HttpPageFetcher) -> None:
    with pytest.raises(FetchError):
        await fetcher.fetch("https://example.com/missing", crawl(depth=1))
