import unittest
from datetime import datetime, timezone

import httpx

from discovery.adapters import ContentType, FailureReason, IngestionContext, IngestionInput
from discovery.adapters.youtube import (
    CHANNEL_UPLOADS,
    PLAYLIST_ITEMS,
    RESOLVE_HANDLE,
    RESOLVE_USERNAME,
    SEARCH_CHANNEL,
    build_youtube_request,
    extract_video_id,
    fetch_youtube_source,
    iso_duration_to_seconds,
)
from discovery.config import YoutubeConfig
from discovery.http_client import HttpFetcher
from discovery.retry import classify_failure

NOW = datetime(2024, 5, 2, 12, 0, tzinfo=timezone.utc)
CONFIG = YoutubeConfig(api_key="test-key", base_url="https://yt.test/v3/", max_results=25)

PLAYLIST_PAYLOAD = {
    "pageInfo": {"totalResults": 3},
    "items": [
        {
            "snippet": {
                "title": "Acme launch event",
                "description": "Acme shows the new <b>widget</b>.",
                "publishedAt": "2024-05-01T10:00:00Z",
                "channelId": "UCacme1234",
                "resourceId": {"kind": "youtube#video", "videoId": "vid-1"},
            },
            "contentDetails": {"videoId": "vid-1", "duration": "PT1H2M3S"},
        },
        {"snippet": {"title": "", "description": ""}, "contentDetails": {"videoId": "vid-2"}},
        {"snippet": {"title": "No identifier"}},
    ],
}


def _channel_source(handle: str = "@acme") -> IngestionInput:
    return IngestionInput(
        source_id="yt-source",
        client_id="client-1",
        source_type="youtube-channel",
        url=f"https://www.youtube.com/{handle}",
        canonical_url=f"https://www.youtube.com/{handle}",
        config={"youtube": {"channel": handle}},
    )


class BuildYoutubeRequestTestCase(unittest.TestCase):
    def test_request_types(self) -> None:
        playlist = build_youtube_request("https://www.youtube.com/playlist?list=PL42", CONFIG)
        self.assertEqual(playlist.type, PLAYLIST_ITEMS)
        self.assertEqual(playlist.url, "https://yt.test/v3/playlistItems")
        self.assertEqual(playlist.params["playlistId"], "PL42")
        self.assertEqual(playlist.params["maxResults"], "25")
        self.assertEqual(playlist.params["key"], "test-key")

        uploads = build_youtube_request("https://www.youtube.com/channel/UCabc123", CONFIG)
        self.assertEqual(uploads.type, CHANNEL_UPLOADS)
        self.assertEqual(uploads.params["playlistId"], "UUabc123")
        self.assertEqual(uploads.channel_id, "UCabc123")

        handle = build_youtube_request("https://www.youtube.com/@acme", CONFIG)
        self.assertEqual(handle.type, RESOLVE_HANDLE)
        self.assertEqual(handle.url, "https://yt.test/v3/channels")
        self.assertEqual(handle.params["forHandle"], "@acme")

        user = build_youtube_request("https://www.youtube.com/user/acmeuser", CONFIG)
        self.assertEqual(user.type, RESOLVE_USERNAME)
        self.assertEqual(user.params["forUsername"], "acmeuser")

        custom = build_youtube_request("https://www.youtube.com/c/AcmeCorp", CONFIG)
        self.assertEqual(custom.type, SEARCH_CHANNEL)
        self.assertEqual(custom.params["q"], "AcmeCorp")
        self.assertEqual(custom.params["maxResults"], "5")

    def test_api_key_is_optional(self) -> None:
        request = build_youtube_request("https://www.youtube.com/@acme", YoutubeConfig())
        self.assertNotIn("key", request.params)

    def test_helpers(self) -> None:
        self.assertEqual(iso_duration_to_seconds("PT1H2M3S"), 3723)
        self.assertEqual(iso_duration_to_seconds("PT45S"), 45)
        self.assertIsNone(iso_duration_to_seconds("P1D"))
        self.assertEqual(extract_video_id({"id": {"videoId": "a"}}), "a")
        self.assertEqual(extract_video_id({"id": "b"}), "b")
        self.assertIsNone(extract_video_id({"snippet": {}}))

    def test_video_id_precedence(self) -> None:
        item = {
            "id": {"videoId": "from-search"},
            "contentDetails": {"videoId": "from-details"},
            "snippet": {"resourceId": {"videoId": "from-resource"}},
        }
        self.assertEqual(extract_video_id(item), "from-search")

        item.pop("id")
        self.assertEqual(extract_video_id(item), "from-details")

        item.pop("contentDetails")
        self.assertEqual(extract_video_id(item), "from-resource")

        item["id"] = "playlist-item-id"
        self.assertEqual(extract_video_id(item), "from-resource")


class YoutubeAdapterTestCase(unittest.TestCase):
    def _context(self, handler) -> IngestionContext:
        fetcher = HttpFetcher(transport=httpx.MockTransport(handler))
        self.addCleanup(fetcher.close)
        return IngestionContext(fetcher=fetcher, now=lambda: NOW, youtube=CONFIG)

    def test_handle_resolves_in_two_requests(self) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.path)
            self.assertEqual(request.url.params.get("key"), "test-key")
            if request.url.path == "/v3/channels":
                self.assertEqual(request.url.params.get("forHandle"), "@acme")
                return httpx.Response(200, json={"items": [{"id": "UCacme1234"}]})
            if request.url.path == "/v3/playlistItems":
                self.assertEqual(request.url.params.get("playlistId"), "UUacme1234")
                return httpx.Response(200, json=PLAYLIST_PAYLOAD)
            return httpx.Response(404)

        result = fetch_youtube_source(_channel_source(), self._context(handler))

        self.assertTrue(result.ok)
        self.assertEqual(seen, ["/v3/channels", "/v3/playlistItems"])
        self.assertEqual([entry["type"] for entry in result.metadata["requests"]], [RESOLVE_HANDLE, CHANNEL_UPLOADS])
        self.assertEqual(result.metadata["channelId"], "UCacme1234")
        self.assertEqual(result.metadata["playlistId"], "UUacme1234")
        self.assertEqual(result.metadata["totalItems"], 3)
        self.assertEqual(result.metadata["itemCount"], 1)
        self.assertEqual(
            [entry["reason"] for entry in result.metadata["skipped"]],
            ["empty_body", "missing_video_id"],
        )

        (envelope,) = result.items
        normalized = envelope.normalized
        self.assertEqual(normalized.external_id, "vid-1")
        self.assertEqual(normalized.url, "https://www.youtube.com/watch?v=vid-1")
        self.assertEqual(normalized.content_type, ContentType.YOUTUBE)
        self.assertEqual(normalized.extracted_body, "Acme shows the new widget.")
        self.assertEqual(normalized.published_at_source, "api")
        self.assertEqual(envelope.source_metadata["durationSeconds"], 3723)
        self.assertEqual(envelope.source_metadata["channelId"], "UCacme1234")
        self.assertFalse(envelope.source_metadata["transcriptAvailable"])

    def test_quota_error_is_retryable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(403, json={"error": {"errors": [{"reason": "quotaExceeded"}]}})

        result = fetch_youtube_source(_channel_source(), self._context(handler))

        self.assertEqual(result.failure_reason, FailureReason.YOUTUBE_QUOTA)
        self.assertEqual(result.metadata["requests"][0]["status"], 403)
        self.assertTrue(classify_failure(result, 1, NOW).retryable)

    def test_unresolved_handle_is_not_found(self) -> None:
        result = fetch_youtube_source(
            _channel_source(), self._context(lambda request: httpx.Response(200, json={"items": []}))
        )

        self.assertEqual(result.failure_reason, FailureReason.YOUTUBE_NOT_FOUND)
        self.assertEqual(classify_failure(result, 1, NOW).reason, "permanent")

    def test_invalid_json_is_parser_error(self) -> None:
        result = fetch_youtube_source(
            _channel_source(), self._context(lambda request: httpx.Response(200, text="{not json"))
        )

        self.assertEqual(result.failure_reason, FailureReason.PARSER_ERROR)

    def test_server_error_suggests_retry(self) -> None:
        result = fetch_youtube_source(_channel_source(), self._context(lambda request: httpx.Response(500)))

        self.assertEqual(result.failure_reason, FailureReason.HTTP_5XX)
        self.assertEqual(result.retry_in_minutes, 5)

    def test_playlist_source_uses_single_request(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.url.params.get("playlistId"))
            return httpx.Response(200, json={"items": [{"id": {"videoId": "v9"}, "snippet": {"title": "Clip"}}]})

        source = IngestionInput(
            source_id="pl-source",
            client_id="client-1",
            source_type="youtube-playlist",
            url="https://www.youtube.com/playlist?list=PL42",
            config={"youtube": {"playlist": "PL42"}},
        )
        result = fetch_youtube_source(source, self._context(handler))

        self.assertTrue(result.ok)
        self.assertEqual(calls, ["PL42"])
        self.assertEqual(result.items[0].normalized.extracted_body, "Clip")
        self.assertEqual(result.items[0].normalized.published_at_source, "fallback")
        self.assertEqual(result.metadata["totalItems"], 1)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
