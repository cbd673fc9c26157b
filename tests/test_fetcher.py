import httpx
import pytest

from harvest.crawler.fetcher import PageFetcher
from harvest.errors import NetworkError


def _fetcher(handler, user_agent="TestBot/1.0"):
    client = httpx.Client(transport=httpx.MockTransport(handler), follow_redirects=True)
    return PageFetcher(user_agent=user_agent, client=client)


def test_fetch_returns_body_and_sends_user_agent():
    seen = {}

    def handler(request):
        seen["ua"] = request.headers["user-agent"]
        seen["accept"] = request.headers["accept"]
        return httpx.Response(200, text="<html>ok</html>")

    with _fetcher(handler) as fetcher:
        assert fetcher.fetch("https://shop.example.com/p/1") == "<html>ok</html>"

    assert seen["ua"] == "TestBot/1.0"
    assert "text/html" in seen["accept"]


def test_fetch_follows_redirects():
    def handler(request):
        if request.url.path == "/old":
            return httpx.Response(301, headers={"location": "https://shop.example.com/new"})
        return httpx.Response(200, text="moved here")

    with _fetcher(handler) as fetcher:
        assert fetcher.fetch("https://shop.example.com/old") == "moved here"


@pytest.mark.parametrize("status", [404, 429, 500])
def test_non_success_status_raises_network_error(status):
    with _fetcher(lambda request: httpx.Response(status)) as fetcher:
        with pytest.raises(NetworkError, match=f"HTTP {status}"):
            fetcher.fetch("https://shop.example.com/p/1")


def test_timeout_raises_network_error():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with _fetcher(handler) as fetcher:
        with pytest.raises(NetworkError, match="Timeout"):
            fetcher.fetch("https://shop.example.com/p/1")


def test_transport_error_raises_network_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with _fetcher(handler) as fetcher:
        with pytest.raises(NetworkError):
            fetcher.fetch("https://shop.example.com/p/1")
