import math
import unittest

from discovery.config import (
    IngestConfig,
    ScoringConfigCache,
    load_ingest_config,
    load_scoring_config,
)


class IngestConfigTestCase(unittest.TestCase):
    def test_defaults(self) -> None:
        config = load_ingest_config({})

        self.assertIsNone(config.db_url)
        self.assertEqual(config.worker_limit, 3)
        self.assertIsNone(config.batch_size)
        self.assertEqual(config.effective_batch_size(), 12)
        self.assertEqual(config.retry.max_attempts, 3)
        self.assertEqual(config.retry.max_delay_minutes, 15)
        self.assertEqual(config.youtube.max_results, 50)
        self.assertIsNone(config.youtube.api_key)
        self.assertEqual(config.scoring_pending_threshold, 500)
        self.assertEqual(config.stale_warning_hours, 24)

    def test_overrides(self) -> None:
        config = load_ingest_config(
            {
                "DISCOVERY_DATABASE_URL": "postgresql://db/discovery",
                "DISCOVERY_INGEST_WORKERS": "5",
                "DISCOVERY_INGEST_BATCH_SIZE": "7",
                "INGESTION_RETRY_MAX_ATTEMPTS": "4",
                "INGESTION_RETRY_MAX_DELAY_MINUTES": "30",
                "YOUTUBE_API_KEY": " key ",
                "YOUTUBE_API_MAX_RESULTS": "500",
                "DISCOVERY_USER_AGENT": "bot/2",
            }
        )

        self.assertEqual(config.db_url, "postgresql://db/discovery")
        self.assertEqual(config.worker_limit, 5)
        self.assertEqual(config.effective_batch_size(), 7)
        self.assertEqual(config.retry.max_attempts, 4)
        self.assertEqual(config.retry.max_delay_minutes, 30)
        self.assertEqual(config.youtube.api_key, "key")
        self.assertEqual(config.youtube.max_results, 50)
        self.assertEqual(config.user_agent, "bot/2")

    def test_out_of_range_values_fall_back(self) -> None:
        with self.assertLogs("discovery.config", level="WARNING"):
            config = load_ingest_config(
                {
                    "INGESTION_RETRY_MAX_ATTEMPTS": "11",
                    "INGESTION_RETRY_MAX_DELAY_MINUTES": "zero",
                    "DISCOVERY_INGEST_WORKERS": "0",
                }
            )

        self.assertEqual(config.retry.max_attempts, 3)
        self.assertEqual(config.retry.max_delay_minutes, 15)
        self.assertEqual(config.worker_limit, 3)
        self.assertEqual(load_ingest_config({"YOUTUBE_API_MAX_RESULTS": "0"}).youtube.max_results, 1)

    def test_pending_threshold(self) -> None:
        def threshold(value: str) -> float:
            return load_ingest_config({"DISCOVERY_SCORING_PENDING_THRESHOLD": value}).scoring_pending_threshold

        self.assertTrue(math.isinf(threshold("0")))
        self.assertEqual(threshold("-5"), 500)
        self.assertEqual(threshold("lots"), 500)
        self.assertEqual(threshold("250"), 250)
        self.assertEqual(threshold("1000000"), 100_000)

    def test_batch_size_scales_with_workers(self) -> None:
        self.assertEqual(IngestConfig(worker_limit=1).effective_batch_size(), 4)
        self.assertEqual(IngestConfig(worker_limit=0).effective_batch_size(), 4)
        self.assertEqual(IngestConfig(worker_limit=2, batch_size=3).effective_batch_size(), 3)


class ScoringConfigTestCase(unittest.TestCase):
    def test_defaults(self) -> None:
        config = load_scoring_config({})

        self.assertEqual(config.weights.as_dict(), {"keyword": 0.5, "recency": 0.3, "source": 0.2})
        self.assertEqual(dict(config.source_multipliers), {"article": 1.0, "rss": 0.85, "youtube": 0.75})
        self.assertEqual(config.threshold, 0.6)
        self.assertEqual(config.recency_half_life_hours, 48.0)
        self.assertEqual(config.weights_version, 1)

    def test_weights_are_normalized(self) -> None:
        config = load_scoring_config(
            {
                "DISCOVERY_SCORING_KEYWORD_WEIGHT": "2",
                "DISCOVERY_SCORING_RECENCY_WEIGHT": "1",
                "DISCOVERY_SCORING_SOURCE_WEIGHT": "1",
            }
        )

        self.assertAlmostEqual(config.weights.keyword, 0.5)
        self.assertAlmostEqual(config.weights.recency, 0.25)
        self.assertAlmostEqual(config.weights.source, 0.25)

    def test_all_zero_weights_use_defaults(self) -> None:
        config = load_scoring_config(
            {
                "DISCOVERY_SCORING_KEYWORD_WEIGHT": "0",
                "DISCOVERY_SCORING_RECENCY_WEIGHT": "0",
                "DISCOVERY_SCORING_SOURCE_WEIGHT": "0",
            }
        )

        self.assertEqual(config.weights.keyword, 0.5)

    def test_invalid_values_fall_back(self) -> None:
        config = load_scoring_config(
            {
                "DISCOVERY_SCORING_THRESHOLD": "1.5",
                "DISCOVERY_SCORING_RECENCY_HALF_LIFE_HOURS": "abc",
                "DISCOVERY_SCORING_SOURCE_WEIGHT_RSS": "3",
                "DISCOVERY_SCORING_WEIGHTS_VERSION": "4",
            }
        )

        self.assertEqual(config.threshold, 0.6)
        self.assertEqual(config.recency_half_life_hours, 48.0)
        self.assertEqual(config.source_multipliers["rss"], 1.0)
        self.assertEqual(config.weights_version, 4)
        self.assertEqual(config.snapshot()["weightsVersion"], 4)

    def test_cache_until_reset(self) -> None:
        environ = {"DISCOVERY_SCORING_THRESHOLD": "0.4"}
        cache = ScoringConfigCache(environ)
        first = cache.get()

        environ["DISCOVERY_SCORING_THRESHOLD"] = "0.8"
        self.assertIs(cache.get(), first)
        cache.reset()
        self.assertEqual(cache.get().threshold, 0.8)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
