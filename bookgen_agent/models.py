"""
Typed records for Bookgen Agent.

Books, generation jobs, chapters and audiobook jobs are stored as plain
SQLite rows. Read paths convert them into pydantic models; jobs, chapters
and audiobook jobs are discriminated on ``status`` so that each variant
carries exactly the fields that are valid in that state.
"""

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from bookgen_agent.errors import InvalidTransitionError


class BookType(str, Enum):
    GUIDED_JOURNAL = "guided_journal"
    PROMPT_BOOK = "prompt_book"
    COLORING_BOOK = "coloring_book"
    CHILDRENS_PICTURE_BOOK = "childrens_picture_book"
    SHORT_ILLUSTRATED_NON_FICTION = "short_illustrated_non_fiction"
    ACTIVITY_PUZZLE_BOOK = "activity_puzzle_book"
    INSPIRATIONAL_QUOTE_BOOK = "inspirational_quote_book"
    VISUAL_STORY_ANTHOLOGY = "visual_story_anthology"
    FIELD_GUIDE = "field_guide"
    RECIPE_DIY_BOOK = "recipe_diy_book"


class Niche(str, Enum):
    WELLNESS_MINDFULNESS = "wellness_mindfulness"
    ENTREPRENEURSHIP_TECH = "entrepreneurship_tech"
    COMEDY_CREATIVITY = "comedy_creativity"
    PRODUCTIVITY_FOCUS = "productivity_focus"
    FITNESS_NUTRITION = "fitness_nutrition"
    TRAVEL_CULTURE = "travel_culture"
    PHILOSOPHY_SELF_REFLECTION = "philosophy_self_reflection"
    EDUCATION_CAREER = "education_career"
    PETS_ANIMALS = "pets_animals"
    SCI_FI_FUTURISM = "sci_fi_futurism"
    STORY_TELLING_FICTION = "story_telling_fiction"


# (default chapter count, default chapter size) per book type
BOOK_TYPE_DEFAULTS: Dict[BookType, tuple] = {
    BookType.GUIDED_JOURNAL: (30, "medium"),
    BookType.PROMPT_BOOK: (25, "small"),
    BookType.COLORING_BOOK: (30, "small"),
    BookType.CHILDRENS_PICTURE_BOOK: (20, "small"),
    BookType.SHORT_ILLUSTRATED_NON_FICTION: (10, "medium"),
    BookType.ACTIVITY_PUZZLE_BOOK: (20, "small"),
    BookType.INSPIRATIONAL_QUOTE_BOOK: (15, "small"),
    BookType.VISUAL_STORY_ANTHOLOGY: (12, "medium"),
    BookType.FIELD_GUIDE: (15, "medium"),
    BookType.RECIPE_DIY_BOOK: (25, "small"),
}

BookStatus = Literal["draft", "generating", "complete", "failed", "published"]
ChapterSize = Literal["small", "medium", "large"]
Role = Literal["admin", "publisher", "writer"]

JOB_STATUSES = (
    "pending", "generating_outline", "outline_complete",
    "generating_chapters", "complete", "failed", "paused",
)
JOB_TERMINAL_STATUSES = ("complete", "failed")
JOB_ACTIVE_STATUSES = tuple(s for s in JOB_STATUSES if s not in JOB_TERMINAL_STATUSES)

CHAPTER_STATUSES = (
    "pending", "generating_text", "text_complete", "generating_image_prompt",
    "image_prompt_ready", "generating_image", "complete", "failed",
)

AUDIOBOOK_STATUSES = ("pending", "generating", "complete", "failed", "cancelled")
AUDIOBOOK_TERMINAL_STATUSES = ("complete", "failed", "cancelled")

# pending -> generating_chapters is the resume path for a requeued job
# whose book already has an outline.
JOB_TRANSITIONS: Dict[str, frozenset] = {
    "pending": frozenset({"generating_outline", "generating_chapters", "failed", "paused"}),
    "generating_outline": frozenset({"outline_complete", "failed"}),
    "outline_complete": frozenset({"generating_chapters", "failed"}),
    "generating_chapters": frozenset({"complete", "failed"}),
    "complete": frozenset(),
    "failed": frozenset({"pending"}),
    "paused": frozenset({"pending", "failed"}),
}

AUDIOBOOK_TRANSITIONS: Dict[str, frozenset] = {
    "pending": frozenset({"generating", "cancelled"}),
    "generating": frozenset({"complete", "failed", "cancelled"}),
    "complete": frozenset({"pending"}),
    "failed": frozenset({"pending"}),
    "cancelled": frozenset({"pending"}),
}


def validate_transition(transitions: Dict[str, frozenset], current: str, target: str,
                        label: str = "Job") -> None:
    """Raise InvalidTransitionError unless ``current -> target`` is allowed."""
    if current not in transitions:
        raise InvalidTransitionError(f"{label} has unknown status {current}", current, target)
    if target not in transitions[current]:
        raise InvalidTransitionError(
            f"{label} cannot move from {current} to {target}", current, target
        )


class RequestContext(BaseModel):
    """Who is asking. Passed explicitly into every orchestration call."""
    user_id: str
    role: Role = "writer"
    book_credits: int = 0

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class BookContext(BaseModel):
    description: str = ""
    target_audience: str = ""
    tone: str = ""
    additional_notes: str = ""
    chapter_count: Optional[int] = Field(default=None, ge=1, le=100)
    chapter_size: Optional[ChapterSize] = None
    use_news_search: bool = False
    news_topics: List[str] = Field(default_factory=list)
    skip_image_prompts: bool = False


class Book(BaseModel):
    id: str
    user_id: str
    title: str
    book_type: BookType
    niche: Niche
    writing_style: Optional[str] = None
    status: BookStatus = "draft"
    context: BookContext = Field(default_factory=BookContext)
    cover_image_prompt: Optional[str] = None
    cover_image_url: Optional[str] = None
    prologue: Optional[str] = None
    prologue_prompt: Optional[str] = None
    epilogue: Optional[str] = None
    epilogue_prompt: Optional[str] = None
    publish_without_chapter_images: bool = False
    published_at: Optional[str] = None
    publish_artifact_url: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def planned_chapter_count(self) -> int:
        if self.context.chapter_count:
            return self.context.chapter_count
        return BOOK_TYPE_DEFAULTS[self.book_type][0]

    def planned_chapter_size(self) -> str:
        if self.context.chapter_size:
            return self.context.chapter_size
        return BOOK_TYPE_DEFAULTS[self.book_type][1]


class OutlineChapter(BaseModel):
    chapter_number: int = Field(ge=1)
    title: str
    summary: str = ""
    visual_motifs: List[str] = Field(default_factory=list)
    emotional_tone: str = ""
    word_count_target: Optional[int] = None


class Outline(BaseModel):
    book_id: str
    chapters: List[OutlineChapter]
    style_guide: Dict[str, Any] = Field(default_factory=dict)
    art_direction: Dict[str, Any] = Field(default_factory=dict)

    @property
    def total_chapters(self) -> int:
        return len(self.chapters)

    def chapter(self, number: int) -> Optional[OutlineChapter]:
        for entry in self.chapters:
            if entry.chapter_number == number:
                return entry
        return None


class StepUsage(BaseModel):
    step: str
    prompt_units: int = 0
    completion_units: int = 0
    total_units: int = 0
    cost: float = 0.0


class TokenUsageSummary(BaseModel):
    total: int = 0
    cost: float = 0.0
    steps: List[StepUsage] = Field(default_factory=list)


# Generation job variants

class _JobBase(BaseModel):
    id: int
    book_id: str
    total_chapters: int
    created_at: str
    token_usage: TokenUsageSummary = Field(default_factory=TokenUsageSummary)


class PendingJob(_JobBase):
    """Queued or on hold. Carries no progress counters."""
    status: Literal["pending", "paused"]


class ActiveJob(_JobBase):
    status: Literal["generating_outline", "outline_complete", "generating_chapters"]
    current_chapter: int
    started_at: str
    worker_id: Optional[str] = None
    lease_expires_at: Optional[str] = None


class CompleteJob(_JobBase):
    status: Literal["complete"]
    current_chapter: int
    started_at: Optional[str] = None
    completed_at: str


class FailedJob(_JobBase):
    status: Literal["failed"]
    current_chapter: int
    error: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None


GenerationJobRecord = Annotated[
    Union[PendingJob, ActiveJob, CompleteJob, FailedJob],
    Field(discriminator="status"),
]


# Chapter variants

class ChapterMetadata(BaseModel):
    word_count: int = 0
    keywords: List[str] = Field(default_factory=list)
    tone: str = ""


class _ChapterBase(BaseModel):
    book_id: str
    chapter_number: int
    text_prompt: Optional[str] = None
    image_prompt: Optional[str] = None
    image_url: Optional[str] = None
    metadata: ChapterMetadata = Field(default_factory=ChapterMetadata)
    token_usage: List[StepUsage] = Field(default_factory=list)
    updated_at: Optional[str] = None


class PendingChapter(_ChapterBase):
    status: Literal["pending", "generating_text"]


class TextChapter(_ChapterBase):
    status: Literal["text_complete", "generating_image_prompt"]
    text: str


class ImagePromptChapter(_ChapterBase):
    status: Literal["image_prompt_ready", "generating_image"]
    text: str
    image_prompt: str


class CompleteChapter(_ChapterBase):
    status: Literal["complete"]
    text: str


class FailedChapter(_ChapterBase):
    status: Literal["failed"]
    error: str
    text: Optional[str] = None


ChapterRecord = Annotated[
    Union[PendingChapter, TextChapter, ImagePromptChapter, CompleteChapter, FailedChapter],
    Field(discriminator="status"),
]


# Audiobook job variants

class _AudiobookBase(BaseModel):
    id: int
    book_id: str
    voice: str
    model: str
    progress: Dict[int, str] = Field(default_factory=dict)
    segments: Dict[str, str] = Field(default_factory=dict)
    estimated_cost: float = 0.0
    actual_cost: float = 0.0
    total_chapters: int = 0
    force_regenerate: bool = False
    created_at: str


class PendingAudiobookJob(_AudiobookBase):
    status: Literal["pending"]


class GeneratingAudiobookJob(_AudiobookBase):
    status: Literal["generating"]
    current_chapter: int
    started_at: str
    worker_id: Optional[str] = None
    lease_expires_at: Optional[str] = None


class CompleteAudiobookJob(_AudiobookBase):
    status: Literal["complete"]
    current_chapter: int
    completed_at: str


class FailedAudiobookJob(_AudiobookBase):
    status: Literal["failed", "cancelled"]
    current_chapter: int
    error: str
    completed_at: Optional[str] = None


AudiobookJobRecord = Annotated[
    Union[PendingAudiobookJob, GeneratingAudiobookJob, CompleteAudiobookJob, FailedAudiobookJob],
    Field(discriminator="status"),
]


class PublishStatus(BaseModel):
    ready: bool
    issues: List[str] = Field(default_factory=list)


_job_adapter = TypeAdapter(GenerationJobRecord)
_chapter_adapter = TypeAdapter(ChapterRecord)
_audiobook_adapter = TypeAdapter(AudiobookJobRecord)


def job_record(data: Dict[str, Any]):
    """Validate a job row into its status variant."""
    return _job_adapter.validate_python(data)


def chapter_record(data: Dict[str, Any]):
    """Validate a chapter row into its status variant."""
    return _chapter_adapter.validate_python(data)


def audiobook_record(data: Dict[str, Any]):
    """Validate an audiobook job row into its status variant."""
    return _audiobook_adapter.validate_python(data)
