"""
Shared fixtures and fake collaborators for Bookgen Agent tests.
"""

import json
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

from bookgen_agent.db_manager import create_book, init_db, upsert_user
from bookgen_agent.errors import UpstreamGenerationFailure
from bookgen_agent.generators import (
    Collaborators,
    GenerationResult,
    ImageGenerator,
    SpeechSynthesizer,
    TextGenerator,
)
from bookgen_agent.prompts import load_default_prompts
from bookgen_agent.utils.config_loader import DEFAULTS, _merge_defaults

CHAPTER_TEXT = (
    "## Morning\n\n"
    "The lantern glowed over the lake. Calm water, calm breath, calm mind.\n\n"
    "**Pause** and notice the light."
)
IMAGE_PROMPT = "A lantern glowing over a calm lake at dawn, watercolor"


def usage(prompt_units: int = 100, completion_units: int = 50,
          cost_units: float = 0.001) -> Dict[str, float]:
    return {"prompt_units": prompt_units, "completion_units": completion_units,
            "cost_units": cost_units}


class FakeTextGenerator(TextGenerator):
    """Answers JSON prompts with an outline and everything else with chapter text.

    Any prompt containing ``fail_on`` raises UpstreamGenerationFailure.
    """

    def __init__(self, chapters: int = 3, fail_on: Optional[str] = None):
        self.chapters = chapters
        self.fail_on = fail_on
        self.prompts: List[str] = []

    def generate(self, prompt: str, params: Optional[Dict[str, Any]] = None) -> GenerationResult:
        self.prompts.append(prompt)
        if self.fail_on and self.fail_on in prompt:
            raise UpstreamGenerationFailure(f"Model error on: {self.fail_on}")

        if params and params.get("json"):
            content = json.dumps({
                "tone": "warm",
                "chapters": [
                    {
                        "chapterNumber": n,
                        "title": f"Part {n}",
                        "summary": f"Summary of part {n}",
                        "visualMotifs": ["lantern", "lake"],
                        "emotionalTone": "hopeful",
                    }
                    for n in range(1, self.chapters + 1)
                ],
            })
        elif prompt.startswith("Generate an image prompt"):
            content = IMAGE_PROMPT
        else:
            content = CHAPTER_TEXT

        return GenerationResult(content=content, usage=usage(), model="fake-chat")


class FakeImageGenerator(ImageGenerator):
    def __init__(self, output_dir: str):
        self.output_dir = output_dir
        self.calls: List[str] = []

    def generate(self, prompt: str, params: Optional[Dict[str, Any]] = None) -> GenerationResult:
        self.calls.append(prompt)
        path = str(Path(self.output_dir) / params["filename"])
        return GenerationResult(content=path, usage=usage(len(prompt), 1, 0.04),
                                model="fake-image")


class FakeSpeechSynthesizer(SpeechSynthesizer):
    """Returns small fake MP3 payloads.

    ``before_call`` runs ahead of every synthesis, which lets a test
    cancel a job while a unit is in flight.
    """

    def __init__(self, fail_on: Optional[str] = None,
                 before_call: Optional[Callable[[str], None]] = None):
        self.fail_on = fail_on
        self.before_call = before_call
        self.calls: List[Dict[str, Any]] = []

    def generate(self, prompt: str, params: Optional[Dict[str, Any]] = None) -> GenerationResult:
        if self.before_call:
            self.before_call(prompt)
        self.calls.append({"text": prompt, **(params or {})})
        if self.fail_on and self.fail_on in prompt:
            raise UpstreamGenerationFailure("Speech synthesis failed: 500")
        return GenerationResult(content=b"ID3" + prompt[:8].encode("utf-8"),
                                usage=usage(len(prompt), 0, 0.0), model=params.get("model"))


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    path = str(tmp_path / "bookgen.db")
    init_db(path)
    return path


@pytest.fixture
def cfg(tmp_path: Path, db_path: str) -> Dict[str, Any]:
    return _merge_defaults(DEFAULTS, {
        "paths": {
            "database": db_path,
            "publish": str(tmp_path / "publish"),
            "audio": str(tmp_path / "audio"),
            "images": str(tmp_path / "images"),
        },
        "worker": {"poll_interval_ms": 10, "lease_seconds": 600},
    })


@pytest.fixture
def prompts() -> Dict[str, Dict[str, Any]]:
    return load_default_prompts()


@pytest.fixture
def writer(db_path: str):
    return upsert_user(db_path, "writer-1", role="writer", book_credits=3)


@pytest.fixture
def admin(db_path: str):
    return upsert_user(db_path, "admin-1", role="admin")


@pytest.fixture
def book(db_path: str, writer):
    return create_book(db_path, writer.user_id, "Calm Mornings", "guided_journal",
                       "wellness_mindfulness",
                       context={"description": "Morning reflections", "chapter_count": 3})


@pytest.fixture
def text_generator() -> FakeTextGenerator:
    return FakeTextGenerator(chapters=3)


@pytest.fixture
def collaborators(text_generator: FakeTextGenerator) -> Collaborators:
    return Collaborators(outline_text=text_generator, chapter_text=text_generator)


@pytest.fixture
def speech() -> FakeSpeechSynthesizer:
    return FakeSpeechSynthesizer()
