import unittest

from discovery.source_config import (
    DEFAULT_WEB_LIST_MAX_DEPTH,
    InvalidSourceConfigError,
    parse_source_config,
    web_list_from_config,
)


class ParseSourceConfigTestCase(unittest.TestCase):
    def test_empty_inputs(self) -> None:
        self.assertEqual(parse_source_config(None), {})
        self.assertEqual(parse_source_config("{}"), {})

    def test_json_string_is_accepted(self) -> None:
        config = parse_source_config('{"youtube": {"channelId": " UC123 "}, "team": "growth"}')

        self.assertEqual(config, {"youtube": {"channel": "UC123"}, "team": "growth"})

    def test_invalid_json_string(self) -> None:
        with self.assertRaises(InvalidSourceConfigError) as ctx:
            parse_source_config("{not json")
        self.assertIn("Invalid JSON string", ctx.exception.issues[0])

    def test_non_object_is_rejected(self) -> None:
        with self.assertRaises(InvalidSourceConfigError):
            parse_source_config(["webList"])

    def test_rss_canonical_must_be_boolean(self) -> None:
        self.assertEqual(parse_source_config({"rss": {"canonical": True}}), {"rss": {"canonical": True}})
        with self.assertRaises(InvalidSourceConfigError) as ctx:
            parse_source_config({"rss": {"canonical": "yes"}})
        self.assertEqual(ctx.exception.issues, ["rss.canonical: must be a boolean"])

    def test_web_list_shorthand_and_pagination(self) -> None:
        config = parse_source_config(
            {
                "webList": {
                    "list_container_selector": " ul.news ",
                    "item_selector": "li",
                    "fields": {
                        "title": "h3",
                        "url": {"selector": "a", "attribute": "href"},
                        "timestamp": {"selector": "time", "valueTransform": {"pattern": "(\\d+)", "flags": "i"}},
                    },
                    "pagination": "a.next",
                }
            }
        )

        web_list = config["webList"]
        self.assertEqual(web_list["listContainerSelector"], "ul.news")
        self.assertEqual(web_list["fields"]["title"], {"selector": "h3"})
        self.assertEqual(web_list["fields"]["url"], {"selector": "a", "attribute": "href"})
        self.assertEqual(web_list["fields"]["timestamp"]["valueTransform"], {"pattern": "(\\d+)", "flags": "i"})
        self.assertEqual(web_list["pagination"], {"nextPage": {"selector": "a.next"}, "maxDepth": DEFAULT_WEB_LIST_MAX_DEPTH})

    def test_legacy_value_template_becomes_transform(self) -> None:
        config = parse_source_config(
            {
                "webList": {
                    "listContainerSelector": "ul",
                    "itemSelector": "li",
                    "fields": {"url": {"selector": "a", "attribute": "data-id", "valueTemplate": "/posts/{{ value }}"}},
                }
            }
        )

        url = config["webList"]["fields"]["url"]
        self.assertEqual(url["valueTransform"], {"pattern": "^(.*)$", "replacement": "/posts/\\1"})
        self.assertEqual(url["legacyValueTemplate"], "/posts/{{ value }}")
        self.assertNotIn("valueTransformWarnings", url)

    def test_web_list_issues_are_collected(self) -> None:
        with self.assertRaises(InvalidSourceConfigError) as ctx:
            parse_source_config(
                {
                    "webList": {
                        "listContainerSelector": "ul",
                        "itemSelector": "  ",
                        "fields": {"title": {"selector": "h3", "valueTransform": {"pattern": "(", "flags": "i"}}},
                        "pagination": {"next_page": "a.next", "max_depth": 50},
                    }
                }
            )

        issues = ctx.exception.issues
        self.assertIn("webList.itemSelector: required", issues)
        self.assertTrue(any(issue.startswith("webList.fields.title.valueTransform.pattern") for issue in issues))
        self.assertIn("webList.pagination.maxDepth: must be between 1 and 20", issues)

    def test_invalid_flags_are_rejected(self) -> None:
        with self.assertRaises(InvalidSourceConfigError):
            parse_source_config(
                {
                    "webList": {
                        "listContainerSelector": "ul",
                        "itemSelector": "li",
                        "fields": {"title": {"selector": "h3", "valueTransform": {"pattern": "x", "flags": "q"}}},
                    }
                }
            )

    def test_web_list_from_stored_config(self) -> None:
        stored = {"webList": {"listContainerSelector": "ul", "itemSelector": "li", "fields": {}}}

        self.assertEqual(web_list_from_config(stored), stored["webList"])
        self.assertIsNone(web_list_from_config({"webList": {"itemSelector": "li"}}))
        self.assertIsNone(web_list_from_config(None))


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
