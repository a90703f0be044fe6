import unittest
from datetime import datetime, timezone

import httpx

from discovery.adapters import ContentType, FailureReason, IngestionContext, IngestionInput
from discovery.adapters.rss import fetch_rss_source, parse_feed_entries
from discovery.http_client import HttpFetcher

NOW = datetime(2024, 5, 2, 12, 0, tzinfo=timezone.utc)
FEED_URL = "https://news.example.com/feed.xml"

RSS_FEED = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0" xmlns:content="http://purl.org/rss/1.0/modules/content/">
  <channel>
    <title>Example News</title>
    <item>
      <title>First story</title>
      <link>https://news.example.com/first</link>
      <guid isPermaLink="false">story-1</guid>
      <pubDate>Wed, 01 May 2024 10:00:00 GMT</pubDate>
      <description><![CDATA[<p>Acme opened a new office.</p>]]></description>
      <category>Business</category>
    </item>
    <item>
      <title>Second story</title>
      <link>https://news.example.com/second</link>
      <content:encoded><![CDATA[<p>Full <b>content</b> wins over the summary.</p>]]></content:encoded>
      <description>Short summary</description>
    </item>
    <item>
      <guid>empty-entry</guid>
    </item>
    <item>
      <title>Title only</title>
      <link>https://news.example.com/title-only</link>
    </item>
    <item>
      <title>Fifth story</title>
      <link>https://news.example.com/fifth</link>
      <pubDate>not a date</pubDate>
      <description>Body of the fifth story.</description>
    </item>
  </channel>
</rss>
"""

ATOM_FEED = """<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Example Atom</title>
  <entry>
    <title>Atom entry</title>
    <link href="https://atom.example.com/entry-1"/>
    <id>urn:uuid:1</id>
    <updated>2024-05-01T09:00:00Z</updated>
    <summary>Atom summary text.</summary>
    <category term="science"/>
  </entry>
</feed>
"""


def _source(url: str = FEED_URL) -> IngestionInput:
    return IngestionInput(
        source_id="feed-source",
        client_id="client-1",
        source_type="rss",
        url=url,
        canonical_url=url,
        config={"rss": {"canonical": True}},
    )


class RssAdapterTestCase(unittest.TestCase):
    def _context(self, body: str, status: int = 200) -> IngestionContext:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(status, text=body, headers={"Content-Type": "application/rss+xml"})

        fetcher = HttpFetcher(transport=httpx.MockTransport(handler))
        self.addCleanup(fetcher.close)
        return IngestionContext(fetcher=fetcher, now=lambda: NOW)

    def test_empty_entry_is_skipped_and_others_normalized(self) -> None:
        result = fetch_rss_source(_source(), self._context(RSS_FEED))

        self.assertTrue(result.ok)
        self.assertEqual(len(result.items), 4)
        self.assertEqual(result.metadata["format"], "rss")
        self.assertEqual(result.metadata["entryCount"], 5)
        self.assertEqual(result.metadata["itemCount"], 4)
        self.assertEqual(result.metadata["skippedCount"], 1)
        self.assertEqual(result.metadata["skipped"], [{"reason": "empty_content", "entryId": "empty-entry"}])

    def test_entry_fields(self) -> None:
        result = fetch_rss_source(_source(), self._context(RSS_FEED))
        first, second, title_only, fifth = result.items

        self.assertEqual(first.normalized.external_id, "story-1")
        self.assertEqual(first.normalized.content_type, ContentType.RSS)
        self.assertEqual(first.normalized.extracted_body, "Acme opened a new office.")
        self.assertEqual(first.normalized.published_at, datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc))
        self.assertEqual(first.normalized.published_at_source, "feed")
        self.assertEqual(first.source_metadata["categories"], ["Business"])
        self.assertEqual(first.source_metadata["feedUrl"], FEED_URL)
        self.assertIn("<guid", first.raw_payload["source"])

        self.assertEqual(second.normalized.external_id, "https://news.example.com/second")
        self.assertEqual(second.normalized.extracted_body, "Full content wins over the summary.")

        self.assertEqual(title_only.normalized.extracted_body, "Title only")

        self.assertEqual(fifth.normalized.published_at, NOW)
        self.assertEqual(fifth.normalized.published_at_source, "fallback")

    def test_atom_feed(self) -> None:
        result = fetch_rss_source(_source(), self._context(ATOM_FEED))

        self.assertTrue(result.ok)
        self.assertEqual(result.metadata["format"], "atom")
        (envelope,) = result.items
        self.assertEqual(envelope.normalized.url, "https://atom.example.com/entry-1")
        self.assertEqual(envelope.normalized.external_id, "urn:uuid:1")
        self.assertEqual(envelope.normalized.extracted_body, "Atom summary text.")
        self.assertEqual(envelope.source_metadata["categories"], ["science"])

    def test_feed_without_entries_succeeds_empty(self) -> None:
        result = fetch_rss_source(_source(), self._context("<rss><channel></channel></rss>"))

        self.assertTrue(result.ok)
        self.assertEqual(result.items, [])
        self.assertEqual(result.metadata["entryCount"], 0)

    def test_http_errors(self) -> None:
        server_error = fetch_rss_source(_source(), self._context("oops", status=502))
        self.assertEqual(server_error.failure_reason, FailureReason.HTTP_5XX)

        missing = fetch_rss_source(_source(), self._context("gone", status=410))
        self.assertEqual(missing.failure_reason, FailureReason.HTTP_4XX)

    def test_parse_feed_entries_handles_malformed_neighbours(self) -> None:
        feed = "<rss><item><title>Good</title><link>https://a/1</link></item><item><title>Broken"
        feed_format, entries = parse_feed_entries(feed)

        self.assertEqual(feed_format, "rss")
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].guid, "https://a/1")


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
