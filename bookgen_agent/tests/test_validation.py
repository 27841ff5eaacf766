"""
Tests for validation utilities.
"""

import pytest

from bookgen_agent.errors import ValidationError
from bookgen_agent.models import BookContext
from bookgen_agent.utils.config_loader import DEFAULTS
from bookgen_agent.utils.validation import (
    validate_audio_asset,
    validate_book_request,
    validate_chapter_number,
    validate_image_upload,
    validate_voice_and_model,
)


def book_request(**overrides):
    data = {"title": "Calm Mornings", "book_type": "guided_journal",
            "niche": "wellness_mindfulness"}
    data.update(overrides)
    return data


class TestValidateBookRequest:
    """Tests for validate_book_request function."""

    def test_valid_request_is_normalized(self) -> None:
        # Act
        result = validate_book_request(book_request(title="  Calm Mornings  ",
                                                     context={"tone": "gentle"}))

        # Assert
        assert result["title"] == "Calm Mornings"
        assert isinstance(result["context"], BookContext)
        assert result["context"].tone == "gentle"
        assert result["publish_without_chapter_images"] is False

    @pytest.mark.parametrize("field", ["title", "book_type", "niche"])
    def test_missing_required_field(self, field: str) -> None:
        # Arrange
        data = book_request()
        del data[field]

        # Act & Assert
        with pytest.raises(ValidationError, match=field):
            validate_book_request(data)

    def test_unknown_book_type(self) -> None:
        with pytest.raises(ValidationError, match="book_type"):
            validate_book_request(book_request(book_type="novel"))

    def test_unknown_niche(self) -> None:
        with pytest.raises(ValidationError, match="niche"):
            validate_book_request(book_request(niche="gardening"))

    def test_blank_title(self) -> None:
        with pytest.raises(ValidationError):
            validate_book_request(book_request(title="   "))

    def test_chapter_count_out_of_range(self) -> None:
        with pytest.raises(ValidationError, match="Invalid context"):
            validate_book_request(book_request(context={"chapter_count": 0}))

    def test_news_search_requires_topics(self) -> None:
        """Test that news search without topics is rejected."""
        with pytest.raises(ValidationError, match="news_topics"):
            validate_book_request(book_request(context={"use_news_search": True}))

    def test_validation_error_is_value_error(self) -> None:
        with pytest.raises(ValueError):
            validate_book_request({})


class TestValidateVoiceAndModel:
    """Tests for validate_voice_and_model function."""

    def test_known_pair_passes(self) -> None:
        validate_voice_and_model("nova", "tts-1-hd", DEFAULTS["audiobook"])

    def test_unknown_voice(self) -> None:
        with pytest.raises(ValidationError, match="voice"):
            validate_voice_and_model("robot", "tts-1", DEFAULTS["audiobook"])

    def test_model_without_rate(self) -> None:
        with pytest.raises(ValidationError, match="model"):
            validate_voice_and_model("alloy", "tts-2", DEFAULTS["audiobook"])


class TestValidateChapterNumber:
    """Tests for validate_chapter_number function."""

    def test_in_range(self) -> None:
        assert validate_chapter_number(3, total_chapters=3) == 3

    @pytest.mark.parametrize("value", [0, -1, "2", True, 2.0])
    def test_rejects_non_positive_or_non_int(self, value) -> None:
        with pytest.raises(ValidationError):
            validate_chapter_number(value)

    def test_beyond_total(self) -> None:
        with pytest.raises(ValidationError, match="out of range"):
            validate_chapter_number(4, total_chapters=3)


class TestValidateImageUpload:
    """Tests for validate_image_upload function."""

    def test_returns_lowercase_extension(self) -> None:
        assert validate_image_upload("Cover.PNG", b"\x89PNG") == ".png"

    def test_rejects_unsupported_type(self) -> None:
        with pytest.raises(ValidationError, match="Unsupported"):
            validate_image_upload("cover.gif", b"GIF89a")

    def test_rejects_empty_file(self) -> None:
        with pytest.raises(ValidationError, match="empty"):
            validate_image_upload("cover.png", b"")

    def test_rejects_oversized_file(self) -> None:
        with pytest.raises(ValidationError, match="exceeds"):
            validate_image_upload("cover.jpg", b"x" * 11, max_bytes=10)


class TestValidateAudioAsset:
    def test_known_assets(self) -> None:
        for asset in ("opening_credits", "closing_credits", "retail_sample"):
            assert validate_audio_asset(asset) == asset

    def test_unknown_asset(self) -> None:
        with pytest.raises(ValidationError):
            validate_audio_asset("bloopers")
