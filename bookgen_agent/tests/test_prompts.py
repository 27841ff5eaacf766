"""
Tests for prompt rendering and response parsing.
"""

import pytest

from bookgen_agent.errors import UpstreamGenerationFailure
from bookgen_agent.models import Outline, OutlineChapter
from bookgen_agent.prompts import (
    book_variables,
    count_words,
    extract_keywords,
    parse_json_content,
    parse_outline,
    previous_summary,
    render_prompt,
    wants_json,
    word_range,
)


class TestRenderPrompt:
    """Tests for render_prompt function."""

    def test_fills_placeholders(self, prompts) -> None:
        # Act
        text = render_prompt(prompts, "news_search",
                             {"NICHE": "Pets Animals", "NEWS_TOPICS": "adoption, shelters"})

        # Assert
        assert "Pets Animals" in text
        assert "adoption, shelters" in text
        assert "{{" not in text

    def test_dicts_rendered_as_json(self) -> None:
        # Arrange
        prompts = {"t": {"template": "Guide: {{GUIDE}}", "required_variables": ["GUIDE"]}}

        # Act
        text = render_prompt(prompts, "t", {"GUIDE": {"voice": "warm"}})

        # Assert
        assert '"voice": "warm"' in text

    def test_missing_variable_raises(self, prompts) -> None:
        with pytest.raises(ValueError, match="NEWS_TOPICS"):
            render_prompt(prompts, "news_search", {"NICHE": "Pets"})

    def test_unknown_template_raises(self, prompts) -> None:
        with pytest.raises(ValueError, match="Unknown prompt template"):
            render_prompt(prompts, "sequel", {})

    def test_wants_json(self, prompts) -> None:
        assert wants_json(prompts, "outline") is True
        assert wants_json(prompts, "chapter_text") is False


class TestBookVariables:
    def test_display_names_and_context(self, book) -> None:
        # Act
        variables = book_variables(book)

        # Assert
        assert variables["BOOK_TYPE"] == "Guided Journal"
        assert variables["NICHE"] == "Wellness Mindfulness"
        assert "Title: Calm Mornings" in variables["BOOK_CONTEXT"]
        assert "Description: Morning reflections" in variables["BOOK_CONTEXT"]


class TestTextHelpers:
    """Tests for word counting and keyword extraction."""

    def test_count_words(self) -> None:
        assert count_words("one two  three\nfour") == 4

    def test_keywords_ranked_by_frequency(self) -> None:
        # Act
        keywords = extract_keywords("Calm breath. Calm mind. Breath again, calm.")

        # Assert
        assert keywords[:2] == ["calm", "breath"]

    def test_keywords_skip_short_words_and_limit(self) -> None:
        # Arrange
        text = " ".join(f"word{chr(97 + i)}" for i in range(15)) + " a an the it"

        # Act
        keywords = extract_keywords(text)

        # Assert
        assert len(keywords) == 10
        assert all(len(k) >= 4 for k in keywords)

    def test_word_range(self) -> None:
        assert word_range({"small": [300, 600]}, "small") == "300-600"


class TestParseJsonContent:
    def test_plain_json(self) -> None:
        assert parse_json_content('{"a": 1}', "outline") == {"a": 1}

    def test_fenced_json(self) -> None:
        assert parse_json_content('```json\n{"a": 1}\n```', "outline") == {"a": 1}

    def test_invalid_json_is_upstream_failure(self) -> None:
        with pytest.raises(UpstreamGenerationFailure, match="outline"):
            parse_json_content("Sure! Here is your outline", "outline")

    def test_non_object_is_upstream_failure(self) -> None:
        with pytest.raises(UpstreamGenerationFailure):
            parse_json_content("[1, 2]", "outline")


class TestParseOutline:
    """Tests for parse_outline function."""

    def test_renumbers_densely_in_given_order(self) -> None:
        # Arrange
        data = {"chapters": [
            {"chapterNumber": 5, "title": "Later"},
            {"chapterNumber": 2, "title": "Earlier", "visualMotifs": ["moon"]},
        ]}

        # Act
        outline = parse_outline("b1", data, {}, {}, expected_chapters=2)

        # Assert
        assert [c.chapter_number for c in outline.chapters] == [1, 2]
        assert [c.title for c in outline.chapters] == ["Earlier", "Later"]
        assert outline.chapters[0].visual_motifs == ["moon"]

    def test_short_outline_is_upstream_failure(self) -> None:
        with pytest.raises(UpstreamGenerationFailure, match="expected 3"):
            parse_outline("b1", {"chapters": [{"title": "Only"}]}, {}, {}, expected_chapters=3)

    def test_missing_chapters_is_upstream_failure(self) -> None:
        with pytest.raises(UpstreamGenerationFailure):
            parse_outline("b1", {"title": "No chapters"}, {}, {}, expected_chapters=1)

    def test_previous_summary(self) -> None:
        # Arrange
        outline = Outline(book_id="b1", chapters=[
            OutlineChapter(chapter_number=1, title="One", summary="We begin."),
            OutlineChapter(chapter_number=2, title="Two", summary="We continue."),
        ])

        # Act & Assert
        assert previous_summary(outline, 1) == "This is the first chapter."
        assert previous_summary(outline, 2) == "We begin."
