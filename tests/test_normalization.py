import unittest
from datetime import datetime, timezone

from discovery.normalization import (
    create_excerpt,
    derive_published_at,
    normalize_title,
    parse_timestamp,
    sanitize_html_content,
    strip_html,
    truncate_preserving_sentences,
)


class SanitizeHtmlTestCase(unittest.TestCase):
    def test_strips_scripts_and_boilerplate_regions(self) -> None:
        markup = (
            "<html><head><style>p{}</style></head><body>"
            "<nav>Menu Home</nav><header>Site</header>"
            "<p>Hello&nbsp;world.</p><!-- hidden --><script>track()</script>"
            "<footer>Copyright</footer></body></html>"
        )

        self.assertEqual(sanitize_html_content(markup), "Hello world.")

    def test_block_elements_become_lines(self) -> None:
        text = sanitize_html_content("<div>First</div><div>Second<br>Third</div>")
        self.assertEqual(text, "First\nSecond\nThird")

    def test_smart_characters_are_replaced(self) -> None:
        text = strip_html("<p>\u201cQuoted\u201d \u2014 it\u2019s here\u2026</p>")
        self.assertEqual(text, '"Quoted" -- it\'s here...')

    def test_leading_boilerplate_words_are_removed(self) -> None:
        self.assertEqual(sanitize_html_content("Navigation: Menu | Latest news today"), "Latest news today")

    def test_truncates_on_sentence_boundary(self) -> None:
        self.assertEqual(sanitize_html_content("<p>One. Two. Three.</p>", max_length=9), "One. Two.")
        self.assertEqual(truncate_preserving_sentences("abcdefghij", 4), "abcd")

    def test_empty_input(self) -> None:
        self.assertEqual(sanitize_html_content(None), "")
        self.assertEqual(sanitize_html_content("<script>only()</script>"), "")


class TextHelpersTestCase(unittest.TestCase):
    def test_create_excerpt(self) -> None:
        self.assertIsNone(create_excerpt(""))
        self.assertEqual(create_excerpt("Short text."), "Short text.")
        self.assertEqual(create_excerpt("One. Two. Three.", 9), "One. Two....")

    def test_normalize_title(self) -> None:
        self.assertEqual(normalize_title("  A &amp; B \n title "), "A & B title")
        self.assertIsNone(normalize_title("   "))
        self.assertIsNone(normalize_title(None))


class TimestampTestCase(unittest.TestCase):
    def test_parses_iso_and_rfc2822(self) -> None:
        expected = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
        self.assertEqual(parse_timestamp("2024-05-01T10:00:00Z"), expected)
        self.assertEqual(parse_timestamp("Wed, 01 May 2024 12:00:00 +0200"), expected)
        self.assertEqual(parse_timestamp("2024-05-01T10:00:00"), expected)

    def test_rejects_garbage(self) -> None:
        self.assertIsNone(parse_timestamp("yesterday-ish"))
        self.assertIsNone(parse_timestamp(""))
        self.assertIsNone(parse_timestamp(None))
        self.assertIsNone(parse_timestamp(1714557600))

    def test_derive_published_at_prefers_first_valid_candidate(self) -> None:
        fallback = datetime(2024, 6, 1, tzinfo=timezone.utc)

        derived = derive_published_at([None, "bad", "2024-05-01T10:00:00+00:00"], fallback, "feed")
        self.assertEqual(derived.source, "feed")
        self.assertEqual(derived.published_at, datetime(2024, 5, 1, 10, tzinfo=timezone.utc))

        missing = derive_published_at(["bad"], fallback)
        self.assertEqual(missing.source, "fallback")
        self.assertEqual(missing.published_at, fallback)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
