"""Tests for {{path|format}} interpolation."""

import json

import pytest

from flowstate.core.exceptions import PathNotFoundError, UnknownTransformError
from flowstate.core.interpolator import (
    apply_format,
    contains_template,
    find_references,
    interpolate,
    interpolate_value,
)


@pytest.fixture
def store():
    return {
        "serp": {
            "data": {
                "processed": {
                    "keyword": "roof repair",
                    "count": 3,
                    "items": [
                        {"title": "Alpha", "url": "https://alpha.example"},
                        {"title": "Beta", "url": "https://beta.example"},
                        {"title": "Gamma", "url": "https://gamma.example"},
                    ],
                }
            }
        }
    }


class TestReferences:
    """Test cases for token discovery."""

    def test_find_references(self):
        text = "Use {{serp.data.processed.keyword}} and {{ serp.data.processed.items[*].url | list }}"
        assert find_references(text) == ["serp.data.processed.keyword", "serp.data.processed.items[*].url"]

    def test_contains_template(self):
        assert contains_template("{{a.b}}")
        assert not contains_template("plain text")
        assert not contains_template(42)


class TestInterpolate:
    """Test cases for interpolating strings."""

    def test_embedded_token_is_rendered_as_text(self, store):
        assert interpolate("Keyword: {{serp.data.processed.keyword}}!", store) == "Keyword: roof repair!"

    def test_whole_token_returns_raw_value(self, store):
        assert interpolate("{{serp.data.processed.count}}", store) == 3
        assert interpolate("  {{serp.data.processed.items[*].title}} ", store) == ["Alpha", "Beta", "Gamma"]

    def test_embedded_list_is_joined(self, store):
        assert interpolate("Titles: {{serp.data.processed.items[*].title}}", store) == "Titles: Alpha, Beta, Gamma"

    def test_unresolved_token_left_in_place(self, store):
        text = "Hello {{serp.data.missing}}"
        assert interpolate(text, store) == text

    def test_unresolved_token_raises_in_strict_mode(self, store):
        with pytest.raises(PathNotFoundError):
            interpolate("Hello {{serp.data.missing}}", store, strict=True)

    def test_text_without_tokens_is_untouched(self, store):
        assert interpolate("no tokens here", store) == "no tokens here"
        assert interpolate(7, store) == 7

    def test_interpolate_value_recurses(self, store):
        config = {
            "prompt": "Write about {{serp.data.processed.keyword}}",
            "urls": ["{{serp.data.processed.items[0].url}}", "static"],
            "limit": 5,
        }
        assert interpolate_value(config, store) == {
            "prompt": "Write about roof repair",
            "urls": ["https://alpha.example", "static"],
            "limit": 5,
        }


class TestFormats:
    """Test cases for interpolation formats."""

    @pytest.mark.parametrize("fmt, expected", [
        ("list", "Alpha, Beta, Gamma"),
        ("count", "3"),
        ("first", "Alpha"),
        ("last", "Gamma"),
        ("range:0-1", "Alpha, Beta"),
        ("range:1-5", "Beta, Gamma"),
    ])
    def test_formats_on_lists(self, store, fmt, expected):
        assert interpolate(f"{{{{serp.data.processed.items[*].title|{fmt}}}}}", store) == expected

    def test_json_format(self, store):
        rendered = interpolate("{{serp.data.processed.items[0]|json}}", store)
        assert json.loads(rendered) == {"title": "Alpha", "url": "https://alpha.example"}

    def test_transform_names_are_accepted_as_formats(self, store):
        assert interpolate("{{serp.data.processed.items|extract_urls}}", store) == [
            "https://alpha.example", "https://beta.example", "https://gamma.example"
        ]

    def test_formats_on_scalars(self):
        assert apply_format("solo", "count") == "1"
        assert apply_format("solo", "first") == "solo"
        assert apply_format("solo", "range:0-2") == "solo"

    def test_unknown_format(self, store):
        with pytest.raises(UnknownTransformError):
            apply_format([1, 2], "shuffle")
        assert interpolate("{{serp.data.processed.items|shuffle}}", store) == "{{serp.data.processed.items|shuffle}}"
