from datetime import date, datetime, timezone

import pytest

from app.utils.tools import (
    canonicalize_url,
    domain_matches,
    get_domain,
    is_http_url,
    local_date,
    parse_timestamp,
    safe_number,
    truncate_text,
    unwrap_link,
    url_hash,
)


def test_unwrap_aggregator_redirect():
    link = "https://news.google.com/url?url=https%3A%2F%2Fwww.reuters.com%2Fmarkets%2Fstory&ct=ga"
    assert unwrap_link(link) == "https://www.reuters.com/markets/story"


def test_unwrap_uses_alternative_params():
    assert unwrap_link("https://www.bing.com/news/apiclick?u=https://apnews.com/a") == "https://apnews.com/a"


def test_unwrap_leaves_publisher_links_alone():
    link = "https://www.cnbc.com/2024/05/01/markets.html?url=https://elsewhere.com"
    assert unwrap_link(link) == link


def test_unwrap_ignores_non_http_targets():
    link = "https://news.google.com/url?q=javascript:alert(1)"
    assert unwrap_link(link) == link


def test_canonicalize_drops_tracking_and_fragment():
    url = "  HTTPS://WWW.Example.com/a/b?utm_source=x&id=3&fbclid=abc#section  "
    assert canonicalize_url(url) == "https://www.example.com/a/b?id=3"


def test_canonicalize_adds_root_path():
    assert canonicalize_url("https://example.com") == "https://example.com/"


def test_domain_strips_www():
    assert get_domain("https://www.reuters.com/x") == "reuters.com"
    assert get_domain("not a url") is None


def test_domain_matches_subdomains():
    assert domain_matches("uk.reuters.com", "reuters.com")
    assert domain_matches("reuters.com", "www.reuters.com")
    assert not domain_matches("notreuters.com", "reuters.com")
    assert not domain_matches(None, "reuters.com")


def test_url_hash_is_deterministic():
    assert url_hash("https://a.com/x") == url_hash(" https://a.com/x ")
    assert len(url_hash("https://a.com/x")) == 64


def test_is_http_url():
    assert is_http_url("https://a.com")
    assert not is_http_url("ftp://a.com")
    assert not is_http_url("")
    assert not is_http_url(None)


def test_parse_timestamp_prefers_iso_field():
    expected = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
    assert parse_timestamp("2024-05-01T10:00:00Z", "Thu, 02 May 2024 10:00:00 GMT") == expected


def test_parse_timestamp_falls_back_to_loose_field():
    expected = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
    assert parse_timestamp(None, "Wed, 01 May 2024 10:00:00 GMT") == expected
    assert parse_timestamp("garbage", "Wed, 01 May 2024 11:00:00 +0100") == expected


def test_parse_timestamp_converts_offsets_to_utc():
    assert parse_timestamp("2024-05-01T12:00:00+02:00") == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)


def test_parse_timestamp_unparseable_is_none():
    assert parse_timestamp("garbage", "also garbage") is None
    assert parse_timestamp(None, None) is None


def test_local_date_uses_timezone():
    assert local_date(datetime(2024, 1, 1, 23, 30, tzinfo=timezone.utc), "Europe/London") == date(2024, 1, 1)
    # BST: 23:30 UTC is already the next day in London
    assert local_date(datetime(2024, 7, 1, 23, 30, tzinfo=timezone.utc), "Europe/London") == date(2024, 7, 2)


@pytest.mark.parametrize(
    "value, expected",
    [("1.5", 1.5), (2, 2.0), ("x", 7.0), (None, 7.0), (float("inf"), 7.0), (float("nan"), 7.0)],
)
def test_safe_number(value, expected):
    assert safe_number(value, 7.0) == expected


def test_truncate_text_collapses_whitespace():
    assert truncate_text("a  b\n c", 3) == "a b"
    assert truncate_text(None, 5) == ""
