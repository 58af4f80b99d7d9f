#!/usr/bin/env python3
"""Tests for the RSS, HTML and search fetchers and the fetch pool."""

import sys
import threading
from pathlib import Path
from unittest.mock import Mock, patch

import pytest
import requests

sys.path.insert(0, str(Path(__file__).parent))

from election_watch.errors import ParseError, SourceFetchError
from election_watch.fetcher import Fetcher
from election_watch.fetchers import html, rss, search
from election_watch.fetchers.http import http_get
from election_watch.models import RawItem, Source, utcnow
from election_watch.quota import QuotaGuard

RSS_DOC = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Gleaner Politics</title>
    <item>
      <title>PNP names candidate for St. Catherine</title>
      <description>&lt;p&gt;The party confirmed its pick.&lt;/p&gt;</description>
      <link>https://jamaica-gleaner.com/article/1</link>
      <pubDate>Mon, 01 Sep 2025 10:30:00 GMT</pubDate>
    </item>
    <item>
      <title>JLP launches manifesto</title>
      <description>Manifesto launch in Kingston.</description>
      <link>https://jamaica-gleaner.com/article/2</link>
    </item>
  </channel>
</rss>
"""

HTML_DOC = """
<html><body>
  <nav><a href="/">Home</a><a href="/contact">Contact</a></nav>
  <div class="posts">
    <a href="/2025/09/01/ecj-confirms-polling-stations-ready">ECJ confirms polling stations ready for Thursday</a>
    <a href="https://nationwideradiojm.com/2025/09/01/pnp-rally">PNP holds final rally in Half Way Tree</a>
    <a href="/2025/09/01/ecj-confirms-polling-stations-ready">ECJ confirms polling stations ready for Thursday</a>
    <a href="mailto:news@example.com">Send us your election news tips here</a>
  </div>
</body></html>
"""


def make_source(kind="rss", **overrides):
    values = dict(
        id=f"{kind}-source",
        name=f"{kind} source",
        kind=kind,
        endpoint="https://nationwideradiojm.com/category/vote2020/",
    )
    if kind == "searchApi":
        values["provider"] = "newsapi"
    values.update(overrides)
    return Source(**values)


def mock_response(content=b"", text="", json_data=None, status=200):
    response = Mock()
    response.content = content
    response.text = text
    response.status_code = status
    response.json.return_value = json_data
    response.raise_for_status.return_value = None
    return response


class TestHttpGet:
    """Error mapping and retry through the quota guard."""

    @patch("election_watch.fetchers.http.requests.get")
    def test_timeout_retried_once_then_fails(self, mock_get):
        mock_get.side_effect = requests.exceptions.Timeout("slow")
        sleep = Mock()
        guard = QuotaGuard("fetch", max_calls=10, window_seconds=60, backoff=[1.5], sleep=sleep)

        with pytest.raises(SourceFetchError):
            http_get("https://example.com/feed", guard=guard)

        assert mock_get.call_count == 2
        sleep.assert_called_once_with(1.5)

    @patch("election_watch.fetchers.http.requests.get")
    def test_http_status_not_retried(self, mock_get):
        response = mock_response(status=503)
        response.raise_for_status.side_effect = requests.exceptions.HTTPError(response=response)
        mock_get.return_value = response
        guard = QuotaGuard("fetch", max_calls=10, window_seconds=60, sleep=Mock())

        with pytest.raises(SourceFetchError, match="HTTP 503"):
            http_get("https://example.com/feed", guard=guard)
        assert mock_get.call_count == 1

    @patch("election_watch.fetchers.http.requests.get")
    def test_exhausted_quota(self, mock_get):
        guard = QuotaGuard("fetch", max_calls=0, window_seconds=60)
        with pytest.raises(SourceFetchError, match="exhausted"):
            http_get("https://example.com/feed", guard=guard)
        mock_get.assert_not_called()


class TestRss:
    """Feed parsing."""

    def test_parse_feed(self):
        items = rss.parse_feed(RSS_DOC, make_source())
        assert len(items) == 2
        assert items[0].title == "PNP names candidate for St. Catherine"
        assert items[0].url == "https://jamaica-gleaner.com/article/1"
        assert items[0].published_at.year == 2025
        assert items[1].published_at is None

    def test_item_limit(self):
        items = rss.parse_feed(RSS_DOC, make_source(max_items=1))
        assert len(items) == 1

    def test_garbage_raises_parse_error(self):
        with pytest.raises(ParseError):
            rss.parse_feed(b"<<<not a feed", make_source())

    @patch("election_watch.fetchers.http.requests.get")
    def test_fetch_rss_uses_timeout(self, mock_get):
        mock_get.return_value = mock_response(content=RSS_DOC)
        items = rss.fetch_rss(make_source(), timeout=7)
        assert len(items) == 2
        assert mock_get.call_args.kwargs["timeout"] == 7


class TestHtml:
    """Headline link harvesting."""

    def test_parse_links(self):
        items = html.parse_links(HTML_DOC, make_source("html"))
        titles = [i.title for i in items]
        assert titles == [
            "ECJ confirms polling stations ready for Thursday",
            "PNP holds final rally in Half Way Tree",
        ]
        # left relative for the normalizer
        assert items[0].url == "/2025/09/01/ecj-confirms-polling-stations-ready"

    def test_empty_page(self):
        with pytest.raises(ParseError):
            html.parse_links("", make_source("html"))


class TestSearch:
    """News and social search mapping."""

    def test_news_query(self):
        assert search.build_news_query(["JLP", "Andrew Holness"]) == 'Jamaica AND (JLP OR "Andrew Holness")'

    def test_social_query(self):
        query = search.build_social_query(["JLP", "PNP"])
        assert query == "(JLP OR PNP) (Jamaica OR JA) -is:retweet lang:en"

    @patch("election_watch.fetchers.http.requests.get")
    def test_news_search(self, mock_get):
        mock_get.return_value = mock_response(json_data={
            "status": "ok",
            "articles": [{
                "title": "PNP outlines plan",
                "description": "Golding speaks in May Pen",
                "url": "https://news.example.com/1",
                "publishedAt": "2025-09-01T10:00:00Z",
                "source": {"name": "Example"},
            }],
        })
        items = search.fetch_news_search(make_source("searchApi"), ["PNP"], api_key="k")
        assert len(items) == 1
        assert items[0].body == "Golding speaks in May Pen"
        assert mock_get.call_args.kwargs["headers"]["X-Api-Key"] == "k"

    def test_news_search_needs_key(self):
        with pytest.raises(SourceFetchError):
            search.fetch_news_search(make_source("searchApi"), ["PNP"], api_key="")

    @patch("election_watch.fetchers.http.requests.get")
    def test_social_search_engagement(self, mock_get):
        mock_get.return_value = mock_response(json_data={"data": [{
            "id": "123",
            "text": "Huge crowd for the JLP in Montego Bay",
            "created_at": "2025-09-01T10:00:00Z",
            "public_metrics": {"retweet_count": 500, "like_count": 900,
                               "reply_count": 40, "quote_count": 3},
        }]})
        source = make_source("searchApi", provider="x")
        items = search.fetch_social_search(source, ["JLP"], bearer_token="t")
        assert items[0].external_id == "123"
        assert items[0].engagement.total == 1440
        assert mock_get.call_args.kwargs["headers"]["Authorization"] == "Bearer t"

    @patch("election_watch.fetchers.http.requests.get")
    def test_invalid_json(self, mock_get):
        response = mock_response()
        response.json.side_effect = ValueError("no json")
        mock_get.return_value = response
        with pytest.raises(ParseError):
            search.fetch_news_search(make_source("searchApi"), ["PNP"], api_key="k")


class TestFetchAll:
    """Bounded pool with per-source isolation."""

    def _item(self, source_id):
        now = utcnow()
        return RawItem(source_id, f"Story from {source_id}", "", "https://x", now, now)

    def test_partial_failure(self):
        sources = [make_source(id="a"), make_source(id="b"), make_source(id="c")]
        fetcher = Fetcher(workers=2)

        def fake_fetch(source, keywords):
            if source.id == "b":
                raise SourceFetchError("HTTP 500")
            return [self._item(source.id)]

        with patch.object(fetcher, "fetch", side_effect=fake_fetch):
            items, errors = fetcher.fetch_all(sources, ["JLP"])

        assert [i.source_id for i in items] == ["a", "c"]
        assert len(errors) == 1
        assert errors[0].source_id == "b"
        assert errors[0].kind == "SourceFetchError"

    def test_cancelled_before_start(self):
        cancel = threading.Event()
        cancel.set()
        fetcher = Fetcher()
        with patch.object(fetcher, "fetch") as mock_fetch:
            items, errors = fetcher.fetch_all([make_source()], ["JLP"], cancel)
        mock_fetch.assert_not_called()
        assert items == [] and errors == []

    def test_dispatch_by_kind(self):
        fetcher = Fetcher(credentials={"x": "token"})
        with patch("election_watch.fetcher.search.fetch_social_search", return_value=[]) as social:
            fetcher.fetch(make_source("searchApi", provider="x"), ["JLP"])
        assert social.call_args.args[2] == "token"
