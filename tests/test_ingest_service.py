import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import ConfigurationError, FeedFetchError
from app.models.article import Article
from app.models.cluster import CLUSTER_KIND_DAILY, Cluster, ClusterMember
from app.schemas.feed import Feed
from app.services.extract_service import ArticleExtractor
from app.services.ingest_service import IngestionPipeline
from tests.factories import LONG_TEXT, NOW, feed_item


def _fetcher(items_by_feed):
    def fetch(http, feed):
        outcome = items_by_feed[feed.name]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    fetcher = MagicMock()
    fetcher.fetch = AsyncMock(side_effect=fetch)
    return fetcher


def _extractor():
    extractor = ArticleExtractor(always_upgrade_sources=["Reuters"])
    extractor.extract_full_text = AsyncMock(return_value=None)
    return extractor


def _pipeline(session_factory, items_by_feed, **kwargs):
    feeds = [Feed(name=name, url=f"https://feeds.example.com/{i}") for i, name in enumerate(items_by_feed)]
    kwargs.setdefault("extractor", _extractor())
    return IngestionPipeline(
        session_factory,
        fetcher=_fetcher(items_by_feed),
        feeds=feeds,
        **kwargs,
    )


async def _articles(session_factory):
    async with session_factory() as db:
        return (await db.execute(select(Article).order_by(Article.url))).scalars().all()


async def test_end_to_end_keeps_only_fresh_items(session_factory):
    pipeline = _pipeline(
        session_factory,
        {
            "MarketWatch": [
                feed_item("https://www.marketwatch.com/fresh", NOW - timedelta(hours=1)),
                feed_item("https://www.marketwatch.com/old", NOW - timedelta(hours=20)),
            ],
            "CNBC": [
                feed_item("https://www.cnbc.com/fresh", NOW - timedelta(hours=2)),
                feed_item("https://www.cnbc.com/old", NOW - timedelta(hours=20)),
            ],
        },
    )

    report = await pipeline.run(now=NOW)

    assert report.articles_seen == 4
    assert report.articles_upserted == 2
    assert report.errors == []
    assert [a.url for a in await _articles(session_factory)] == [
        "https://www.cnbc.com/fresh",
        "https://www.marketwatch.com/fresh",
    ]


async def test_failing_feed_is_isolated(session_factory):
    pipeline = _pipeline(
        session_factory,
        {
            "Feed 1": [feed_item("https://one.example.com/a", NOW)],
            "Feed 2": FeedFetchError("Feed 2", 3, aiohttp.ClientError("down")),
            "Feed 3": [feed_item("https://three.example.com/a", NOW)],
        },
    )

    report = await pipeline.run(now=NOW)

    assert report.articles_upserted == 2
    assert len(report.errors) == 1
    assert report.errors[0]["source"] == "Feed 2"
    assert "down" in report.errors[0]["error"]
    assert len(await _articles(session_factory)) == 2


async def test_bad_item_does_not_abort_feed(session_factory):
    extractor = _extractor()
    original = extractor.resolve

    async def resolve(http, url, snippet, policy):
        if url.endswith("/broken"):
            raise RuntimeError("parser exploded")
        return await original(http, url, snippet, policy)

    extractor.resolve = resolve
    pipeline = _pipeline(
        session_factory,
        {"CNBC": [feed_item("https://www.cnbc.com/broken", NOW), feed_item("https://www.cnbc.com/fine", NOW)]},
        extractor=extractor,
    )

    report = await pipeline.run(now=NOW)

    assert report.articles_upserted == 1
    assert report.errors == [{"source": "CNBC", "error": "parser exploded"}]


async def test_upsert_is_idempotent_and_keeps_longer_content(session_factory):
    url = "https://www.cnbc.com/story"
    first = _pipeline(session_factory, {"CNBC": [feed_item(url, NOW, snippet=LONG_TEXT)]})
    await first.run(now=NOW)

    longer = LONG_TEXT + " Traders now expect two cuts before the end of the year."
    second = _pipeline(session_factory, {"CNBC": [feed_item(url + "?utm_source=rss", NOW, snippet=longer)]})
    report = await second.run(now=NOW)
    assert report.articles_upserted == 1

    third = _pipeline(session_factory, {"CNBC": [feed_item(url, NOW, snippet=LONG_TEXT)]})
    await third.run(now=NOW)

    articles = await _articles(session_factory)
    assert len(articles) == 1
    assert articles[0].url == url
    assert articles[0].content == longer


async def test_freshness_boundary(session_factory):
    window_edge = NOW - timedelta(hours=12)
    pipeline = _pipeline(
        session_factory,
        {
            "CNBC": [
                feed_item("https://www.cnbc.com/edge", window_edge),
                feed_item("https://www.cnbc.com/past-edge", window_edge - timedelta(seconds=1)),
                feed_item("https://www.cnbc.com/undated", None),
            ]
        },
    )

    await pipeline.run(now=NOW)

    urls = {a.url for a in await _articles(session_factory)}
    assert urls == {"https://www.cnbc.com/edge", "https://www.cnbc.com/undated"}


async def test_short_content_is_rejected_and_title_fallback_used(session_factory):
    long_title = "Treasury yields climb to the highest level in five months as traders pare rate-cut bets"
    pipeline = _pipeline(
        session_factory,
        {
            "CNBC": [
                feed_item("https://www.cnbc.com/tiny", NOW, snippet="Too short.", title="Short"),
                feed_item("https://www.cnbc.com/title-only", NOW, snippet=None, title=long_title),
            ]
        },
    )

    report = await pipeline.run(now=NOW)

    articles = await _articles(session_factory)
    assert report.articles_upserted == 1
    assert [a.url for a in articles] == ["https://www.cnbc.com/title-only"]
    assert articles[0].content == long_title


async def test_aggregator_links_are_unwrapped_and_normalized(session_factory):
    link = "https://news.google.com/url?url=https://www.reuters.com/markets/fed-holds?utm_medium=rss"
    item = feed_item(link, NOW, snippet="Fed holds rates steady as inflation cools - Reuters " + LONG_TEXT)
    pipeline = _pipeline(session_factory, {"Reuters": [item]})

    await pipeline.run(now=NOW)

    article = (await _articles(session_factory))[0]
    assert article.url == "https://www.reuters.com/markets/fed-holds"
    assert article.domain == "reuters.com"
    assert article.source == "Reuters"
    assert article.title == "Markets brace for rate decision"


async def test_publisher_domain_verification(session_factory):
    items = {"Reuters": [feed_item("https://mirror.example.com/copy", NOW)]}

    soft = _pipeline(session_factory, items, expected_publisher_domains={"Reuters": "reuters.com"})
    assert (await soft.run(now=NOW)).articles_upserted == 1

    strict = _pipeline(
        session_factory,
        {"Reuters": [feed_item("https://mirror.example.com/other", NOW)]},
        expected_publisher_domains={"Reuters": "reuters.com"},
        verify_publisher_domain=True,
    )
    assert (await strict.run(now=NOW)).articles_upserted == 0


async def test_items_without_links_are_skipped(session_factory):
    pipeline = _pipeline(session_factory, {"CNBC": [feed_item(None, NOW), feed_item("mailto:x@y.com", NOW)]})

    report = await pipeline.run(now=NOW)

    assert report.articles_seen == 2
    assert report.articles_upserted == 0
    assert report.errors == []


async def test_sticky_daily_cluster_links_articles(session_factory):
    items = {"CNBC": [feed_item("https://www.cnbc.com/a", NOW), feed_item("https://www.cnbc.com/b", NOW)]}

    first = await _pipeline(session_factory, items).run(now=NOW)
    second = await _pipeline(session_factory, items).run(now=NOW)

    assert first.cluster_id is not None
    assert first.cluster_id == second.cluster_id
    assert first.links_upserted == 2
    async with session_factory() as db:
        daily = (await db.execute(select(Cluster).where(Cluster.kind == CLUSTER_KIND_DAILY))).scalars().all()
        members = (await db.execute(select(func.count()).select_from(ClusterMember))).scalar_one()
    assert len(daily) == 1
    assert daily[0].label == "Top stories"
    assert members == 2


async def test_sticky_daily_cluster_can_be_disabled(session_factory):
    pipeline = _pipeline(
        session_factory,
        {"CNBC": [feed_item("https://www.cnbc.com/a", NOW)]},
        sticky_daily_cluster=False,
    )

    report = await pipeline.run(now=NOW)

    assert report.cluster_id is None
    assert report.links_upserted == 0
    assert report.to_response()["clusterId"] is None


async def test_always_upgrade_source_uses_extracted_text(session_factory):
    extractor = _extractor()
    full = "Full wire story text. " * 20
    extractor.extract_full_text = AsyncMock(return_value=full)
    pipeline = _pipeline(session_factory, {"Reuters": [feed_item("https://www.reuters.com/x", NOW)]}, extractor=extractor)

    await pipeline.run(now=NOW)

    article = (await _articles(session_factory))[0]
    assert article.content == full.strip()


async def test_missing_feed_configuration_raises(session_factory):
    pipeline = IngestionPipeline(session_factory, fetcher=MagicMock(), extractor=_extractor(), feeds=[])

    with pytest.raises(ConfigurationError):
        await pipeline.run(now=NOW)


async def test_feeds_are_loaded_from_file_each_run(session_factory, tmp_path):
    path = tmp_path / "feeds.json"
    path.write_text('[{"name": "CNBC", "url": "https://feeds.example.com/cnbc"}]', encoding="utf-8")
    pipeline = IngestionPipeline(
        session_factory,
        fetcher=_fetcher({"CNBC": [feed_item("https://www.cnbc.com/file", NOW)]}),
        extractor=_extractor(),
        feeds_path=path,
    )

    report = await pipeline.run(now=NOW)

    assert report.articles_upserted == 1


async def test_concurrent_runs_share_one_daily_cluster(session_factory):
    pipeline = _pipeline(session_factory, {"CNBC": []})

    ids = await asyncio.gather(*(pipeline.ensure_daily_cluster(NOW.date()) for _ in range(4)))

    assert len(set(ids)) == 1
    async with session_factory() as db:
        count = (
            await db.execute(select(func.count()).select_from(Cluster).where(Cluster.kind == CLUSTER_KIND_DAILY))
        ).scalar_one()
    assert count == 1


async def test_daily_cluster_date_is_unique_but_run_clusters_are_not(session_factory):
    day = NOW.date()
    async with session_factory() as db:
        db.add_all([Cluster(label="a", cluster_date=day), Cluster(label="b", cluster_date=day)])
        db.add(Cluster(label="Top stories", cluster_date=day, kind=CLUSTER_KIND_DAILY))
        await db.commit()

    async with session_factory() as db:
        db.add(Cluster(label="Top stories", cluster_date=day, kind=CLUSTER_KIND_DAILY))
        with pytest.raises(IntegrityError):
            await db.commit()
