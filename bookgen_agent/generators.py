"""
Generation collaborators for Bookgen Agent.

Text, image, speech and news-search clients behind one small contract:
``generate(prompt, params) -> GenerationResult``. Every implementation
wraps its failures in UpstreamGenerationFailure so the scheduler can
record them against the unit of work that was running.
"""

import base64
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx
from langchain_openai import ChatOpenAI

from bookgen_agent.errors import UpstreamGenerationFailure
from bookgen_agent.utils.file_utils import atomic_write_bytes
from bookgen_agent.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class GenerationResult:
    """What a collaborator call produced and what it cost."""
    content: Any
    usage: Dict[str, float] = field(default_factory=lambda: {
        "prompt_units": 0, "completion_units": 0, "cost_units": 0.0,
    })
    model: Optional[str] = None


class Generator(ABC):
    """Base contract for all collaborators."""

    @abstractmethod
    def generate(self, prompt: str, params: Optional[Dict[str, Any]] = None) -> GenerationResult:
        ...


class TextGenerator(Generator):
    """Returns generated text in ``content``. ``params['json']`` asks for a JSON object."""


class ImageGenerator(Generator):
    """Returns a path or URL to the stored image in ``content``."""


class SpeechSynthesizer(Generator):
    """Returns encoded audio bytes in ``content``. ``params`` carries voice and model."""


class NewsSearch(Generator):
    """Returns a short plain-text digest of recent coverage in ``content``."""


class ChatTextGenerator(TextGenerator):
    """Text generation through a LangChain chat model."""

    def __init__(self, model: str, api_key: str, temperature: float = 0.7,
                 pricing: Optional[Dict[str, Dict[str, float]]] = None,
                 base_url: Optional[str] = None, timeout: float = 120):
        self.model = model
        self.pricing = (pricing or {}).get(model, {})
        self.llm = ChatOpenAI(
            model=model,
            api_key=api_key,
            temperature=temperature,
            base_url=base_url,
            timeout=timeout,
        )

    def generate(self, prompt: str, params: Optional[Dict[str, Any]] = None) -> GenerationResult:
        params = params or {}
        llm = self.llm
        if params.get("json"):
            llm = llm.bind(response_format={"type": "json_object"})
        if params.get("max_tokens"):
            llm = llm.bind(max_tokens=params["max_tokens"])

        try:
            response = llm.invoke(prompt)
        except Exception as e:
            raise UpstreamGenerationFailure(f"Text generation failed ({self.model}): {e}") from e

        content = response.content if isinstance(response.content, str) else str(response.content)
        if not content.strip():
            raise UpstreamGenerationFailure(f"Text generation returned no content ({self.model})")

        usage_metadata = response.usage_metadata or {}
        prompt_units = usage_metadata.get("input_tokens", 0)
        completion_units = usage_metadata.get("output_tokens", 0)
        cost = (prompt_units / 1000 * self.pricing.get("prompt", 0.0)
                + completion_units / 1000 * self.pricing.get("completion", 0.0))

        return GenerationResult(
            content=content.strip(),
            usage={
                "prompt_units": prompt_units,
                "completion_units": completion_units,
                "cost_units": round(cost, 6),
            },
            model=self.model,
        )


class OpenAIImageGenerator(ImageGenerator):
    """Image generation over the OpenAI images endpoint.

    The image is decoded and written under ``output_dir``; the stored path
    is returned as the result content.
    """

    def __init__(self, base_url: str, api_key: str, model: str, output_dir: str,
                 size: str = "1024x1024", cost_per_image: float = 0.04, timeout: float = 120):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.output_dir = output_dir
        self.size = size
        self.cost_per_image = cost_per_image
        self.timeout = timeout

    def generate(self, prompt: str, params: Optional[Dict[str, Any]] = None) -> GenerationResult:
        params = params or {}
        payload = {
            "model": self.model,
            "prompt": prompt,
            "size": params.get("size", self.size),
            "n": 1,
            "response_format": "b64_json",
        }

        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(
                    f"{self.base_url}/images/generations",
                    json=payload,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
                response.raise_for_status()
                data = response.json()["data"][0]["b64_json"]
        except Exception as e:
            raise UpstreamGenerationFailure(f"Image generation failed: {e}") from e

        filename = params.get("filename", "image.png")
        path = os.path.join(self.output_dir, filename)
        atomic_write_bytes(path, base64.b64decode(data))
        logger.debug(f"[IMAGE] Saved {path}")

        return GenerationResult(
            content=path,
            usage={"prompt_units": len(prompt), "completion_units": 1,
                   "cost_units": self.cost_per_image},
            model=self.model,
        )


class OpenAISpeechSynthesizer(SpeechSynthesizer):
    """Text to speech over the OpenAI audio endpoint, MP3 output."""

    def __init__(self, base_url: str, api_key: str, rates: Dict[str, float],
                 timeout: float = 120):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.rates = rates
        self.timeout = timeout

    def generate(self, prompt: str, params: Optional[Dict[str, Any]] = None) -> GenerationResult:
        params = params or {}
        model = params.get("model", "tts-1")
        payload = {
            "model": model,
            "voice": params.get("voice", "alloy"),
            "input": prompt,
            "response_format": "mp3",
        }

        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(
                    f"{self.base_url}/audio/speech",
                    json=payload,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
                response.raise_for_status()
                audio = response.content
        except Exception as e:
            raise UpstreamGenerationFailure(f"Speech synthesis failed: {e}") from e

        return GenerationResult(
            content=audio,
            usage={"prompt_units": len(prompt), "completion_units": 0,
                   "cost_units": round(len(prompt) / 1000 * self.rates.get(model, 0.0), 6)},
            model=model,
        )


class PerplexityNewsSearch(NewsSearch):
    """Recent-news digest through the Perplexity chat completions API."""

    def __init__(self, base_url: str, api_key: str, model: str = "sonar",
                 timeout: float = 60):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout = timeout

    def generate(self, prompt: str, params: Optional[Dict[str, Any]] = None) -> GenerationResult:
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": "Summarize recent, factual news in short bullet points."},
                {"role": "user", "content": prompt},
            ],
        }

        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(
                    f"{self.base_url}/chat/completions",
                    json=payload,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
                response.raise_for_status()
                result = response.json()
        except Exception as e:
            raise UpstreamGenerationFailure(f"News search failed: {e}") from e

        usage = result.get("usage", {})
        return GenerationResult(
            content=result["choices"][0]["message"]["content"],
            usage={"prompt_units": usage.get("prompt_tokens", 0),
                   "completion_units": usage.get("completion_tokens", 0),
                   "cost_units": 0.0},
            model=self.model,
        )


@dataclass
class Collaborators:
    """The set of collaborators a worker drives jobs with.

    ``image`` and ``news`` are optional. Without an image generator,
    chapters complete without images and publish readiness reports them
    until they are uploaded.
    """
    outline_text: TextGenerator
    chapter_text: TextGenerator
    speech: Optional[SpeechSynthesizer] = None
    image: Optional[ImageGenerator] = None
    news: Optional[NewsSearch] = None


def build_collaborators(cfg: Dict[str, Any]) -> Collaborators:
    """Build real collaborators from the global config.

    Args:
        cfg: Config from load_global_config.

    Returns:
        Collaborators wired to OpenAI and, when a key is set, Perplexity.
    """
    api = cfg["api"]
    generation = cfg["generation"]
    timeout = api["timeout_seconds"]

    def chat(model: str) -> ChatTextGenerator:
        return ChatTextGenerator(
            model=model,
            api_key=api["openai_api_key"],
            temperature=generation["temperature"],
            pricing=generation["pricing"],
            base_url=api["openai_base_url"],
            timeout=timeout,
        )

    image = None
    if generation.get("image_model"):
        image = OpenAIImageGenerator(
            base_url=api["openai_base_url"],
            api_key=api["openai_api_key"],
            model=generation["image_model"],
            output_dir=cfg["paths"]["images"],
            timeout=timeout,
        )

    news = None
    if api.get("perplexity_api_key"):
        news = PerplexityNewsSearch(
            base_url=api["perplexity_base_url"],
            api_key=api["perplexity_api_key"],
            timeout=timeout,
        )

    return Collaborators(
        outline_text=chat(generation["outline_model"]),
        chapter_text=chat(generation["chapter_model"]),
        speech=OpenAISpeechSynthesizer(
            base_url=api["openai_base_url"],
            api_key=api["openai_api_key"],
            rates=cfg["audiobook"]["models"],
            timeout=timeout,
        ),
        image=image,
        news=news,
    )
