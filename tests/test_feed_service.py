import asyncio
import json
from unittest.mock import AsyncMock, patch

import aiohttp
import pytest

from app.core.exceptions import ConfigurationError, FeedFetchError, FeedParseError, MarketPulseError
from app.schemas.feed import Feed
from app.services.feed_service import FeedFetcher, load_feeds, parse_feed

RSS = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0" xmlns:content="http://purl.org/rss/1.0/modules/content/">
  <channel>
    <title>Markets</title>
    <item>
      <title>Stocks rise as yields ease</title>
      <link>https://www.marketwatch.com/story/stocks-rise</link>
      <pubDate>Wed, 01 May 2024 10:00:00 GMT</pubDate>
      <description>&lt;p&gt;Equities &lt;b&gt;climbed&lt;/b&gt; on Wednesday.&lt;/p&gt;</description>
    </item>
    <item>
      <title>Oil slips</title>
      <guid isPermaLink="true">https://www.cnbc.com/oil-slips</guid>
    </item>
  </channel>
</rss>
"""

ATOM = b"""<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Wire</title>
  <entry>
    <title>Fed holds rates</title>
    <link rel="self" href="https://example.com/self"/>
    <link rel="alternate" href="https://www.reuters.com/markets/fed-holds"/>
    <published>2024-05-01T18:00:00Z</published>
    <summary>The Federal Reserve left rates unchanged.</summary>
  </entry>
</feed>
"""


def test_parse_rss_items():
    items = parse_feed(RSS)

    assert len(items) == 2
    first = items[0]
    assert first.title == "Stocks rise as yields ease"
    assert first.link == "https://www.marketwatch.com/story/stocks-rise"
    assert first.pub_date == "Wed, 01 May 2024 10:00:00 GMT"
    assert first.iso_date is None
    assert first.snippet == "Equities climbed on Wednesday."
    assert items[1].link == "https://www.cnbc.com/oil-slips"
    assert items[1].snippet is None


def test_parse_atom_entries():
    items = parse_feed(ATOM)

    assert len(items) == 1
    entry = items[0]
    assert entry.link == "https://www.reuters.com/markets/fed-holds"
    assert entry.iso_date == "2024-05-01T18:00:00Z"
    assert entry.snippet == "The Federal Reserve left rates unchanged."


@pytest.mark.parametrize("body", [b"<html><body>Not a feed</body></html>", b"plain text"])
def test_parse_rejects_non_feed_documents(body):
    with pytest.raises(FeedParseError):
        parse_feed(body)


def test_load_feeds(tmp_path):
    path = tmp_path / "feeds.json"
    path.write_text(json.dumps([{"name": "Reuters", "url": "https://example.com/rss"}]), encoding="utf-8")

    feeds = load_feeds(path)

    assert feeds == [Feed(name="Reuters", url="https://example.com/rss")]


@pytest.mark.parametrize("content", ["[]", "{}", "not json", '[{"name": "x"}]'])
def test_load_feeds_rejects_bad_config(tmp_path, content):
    path = tmp_path / "feeds.json"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(ConfigurationError):
        load_feeds(path)


def test_load_feeds_missing_file(tmp_path):
    with pytest.raises(ConfigurationError):
        load_feeds(tmp_path / "missing.json")


class _Sleeper:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


async def test_fetch_retries_with_linear_backoff():
    sleeper = _Sleeper()
    fetcher = FeedFetcher(retries=2, base_delay=0.6, sleep=sleeper)
    feed = Feed(name="MarketWatch", url="https://example.com/rss")

    with patch.object(fetcher, "_get", AsyncMock(side_effect=[aiohttp.ClientError("boom"), b"<html/>", RSS])) as get:
        items = await fetcher.fetch(None, feed)

    assert len(items) == 2
    assert get.await_count == 3
    assert sleeper.delays == pytest.approx([0.6, 1.2])


async def test_fetch_raises_one_error_after_exhausting_attempts():
    sleeper = _Sleeper()
    fetcher = FeedFetcher(retries=2, base_delay=0.5, sleep=sleeper)
    feed = Feed(name="Broken", url="https://example.com/rss")

    with patch.object(fetcher, "_get", AsyncMock(side_effect=aiohttp.ClientError("down"))) as get:
        with pytest.raises(FeedFetchError) as excinfo:
            await fetcher.fetch(None, feed)

    assert get.await_count == 3
    assert excinfo.value.feed_name == "Broken"
    assert excinfo.value.attempts == 3
    assert isinstance(excinfo.value.last_error, aiohttp.ClientError)
    assert sleeper.delays == pytest.approx([0.5, 1.0])


async def test_fetch_without_retries_makes_a_single_attempt():
    fetcher = FeedFetcher(retries=0, sleep=_Sleeper())

    with patch.object(fetcher, "_get", AsyncMock(side_effect=asyncio.TimeoutError())):
        with pytest.raises(FeedFetchError) as excinfo:
            await fetcher.fetch(None, Feed(name="Slow", url="https://example.com/rss"))

    assert excinfo.value.attempts == 1


async def test_unparseable_feed_surfaces_as_fetch_error():
    fetcher = FeedFetcher(retries=1, sleep=_Sleeper())

    with patch.object(fetcher, "_get", AsyncMock(return_value=b"<html><body>maintenance</body></html>")):
        with pytest.raises(FeedFetchError) as excinfo:
            await fetcher.fetch(None, Feed(name="Down", url="https://example.com/rss"))

    assert excinfo.value.attempts == 2
    assert isinstance(excinfo.value.last_error, FeedParseError)
    assert isinstance(excinfo.value.last_error, MarketPulseError)
