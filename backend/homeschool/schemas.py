"""Pydantic request schemas used by the API.

Schemas keep API input shapes stable and provide validation for
controller handlers and tests. Update payloads use optional fields so
only what the client sends is changed.
"""

from datetime import date, time
from pydantic import BaseModel, Field
from typing import Dict, List, Optional

COLOR_PATTERN = r'^#[0-9A-Fa-f]{6}$'


class RegisterIn(BaseModel):
    """Payload for user registration/login endpoints."""
    username: str = Field(min_length=1, max_length=150)
    password: str = Field(min_length=1)


class TokenOut(BaseModel):
    """Authentication response containing an access token."""
    access_token: str


class ChildIn(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    grade: str = Field(min_length=1, max_length=10)
    independence_level: int = Field(default=1, ge=1, le=4)


class ChildUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    grade: Optional[str] = Field(default=None, min_length=1, max_length=10)
    independence_level: Optional[int] = Field(default=None, ge=1, le=4)


class IndependenceLevelIn(BaseModel):
    independence_level: int = Field(ge=1, le=4)


class SubjectIn(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    color: str = Field(default='#3b82f6', pattern=COLOR_PATTERN)


class SubjectUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    color: Optional[str] = Field(default=None, pattern=COLOR_PATTERN)


class UnitIn(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    target_completion_date: Optional[date] = None


class UnitUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    target_completion_date: Optional[date] = None


class TopicIn(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    estimated_minutes: int = Field(default=30, ge=1, le=480)
    prerequisites: List[int] = Field(default_factory=list)
    required: bool = True
    content: Optional[str] = None
    content_format: str = Field(default='markdown', pattern=r'^(plain|markdown|html)$')


class TopicUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    estimated_minutes: Optional[int] = Field(default=None, ge=1, le=480)
    prerequisites: Optional[List[int]] = None
    required: Optional[bool] = None


class TopicContentIn(BaseModel):
    content: str = ''
    content_format: str = Field(default='markdown', pattern=r'^(plain|markdown|html)$')


class SessionIn(BaseModel):
    topic_id: int
    child_id: int
    estimated_minutes: Optional[int] = Field(default=None, ge=1, le=480)
    status: str = Field(default='backlog', pattern=r'^(backlog|planned|scheduled|done)$')
    commitment_type: str = Field(default='preferred', pattern=r'^(fixed|preferred|flexible)$')
    notes: Optional[str] = None


class SessionUpdate(BaseModel):
    status: Optional[str] = Field(default=None, pattern=r'^(backlog|planned|scheduled|done)$')
    commitment_type: Optional[str] = Field(default=None, pattern=r'^(fixed|preferred|flexible)$')
    estimated_minutes: Optional[int] = Field(default=None, ge=1, le=480)
    notes: Optional[str] = None
    evidence_notes: Optional[str] = None


class ScheduleIn(BaseModel):
    scheduled_day_of_week: int = Field(ge=1, le=7)
    scheduled_start_time: time
    scheduled_end_time: time
    scheduled_date: Optional[date] = None


class CompleteSessionIn(BaseModel):
    evidence_notes: Optional[str] = None


class FlashcardIn(BaseModel):
    card_type: str = 'basic'
    question: str = Field(min_length=1)
    answer: str = Field(min_length=1)
    hint: Optional[str] = None
    choices: List[str] = Field(default_factory=list)
    correct_choices: List[int] = Field(default_factory=list)
    cloze_text: Optional[str] = None
    cloze_answers: List[str] = Field(default_factory=list)
    question_image_url: Optional[str] = None
    answer_image_url: Optional[str] = None
    occlusion_data: List[dict] = Field(default_factory=list)
    difficulty_level: str = Field(default='medium', pattern=r'^(easy|medium|hard)$')
    tags: List[str] = Field(default_factory=list)


class FlashcardUpdate(BaseModel):
    card_type: Optional[str] = None
    question: Optional[str] = Field(default=None, min_length=1)
    answer: Optional[str] = Field(default=None, min_length=1)
    hint: Optional[str] = None
    choices: Optional[List[str]] = None
    correct_choices: Optional[List[int]] = None
    cloze_text: Optional[str] = None
    cloze_answers: Optional[List[str]] = None
    question_image_url: Optional[str] = None
    answer_image_url: Optional[str] = None
    occlusion_data: Optional[List[dict]] = None
    difficulty_level: Optional[str] = Field(default=None, pattern=r'^(easy|medium|hard)$')
    tags: Optional[List[str]] = None


class BulkStatusIn(BaseModel):
    flashcard_ids: List[int] = Field(min_length=1)
    is_active: bool


class ReviewResultIn(BaseModel):
    """Rating plus the optional answer data used to check flashcard answers."""
    result: str = Field(pattern=r'^(again|hard|good|easy)$')
    selected_choices: Optional[List[int]] = None
    user_answer: Optional[str] = None
    cloze_answers: Optional[List[str]] = None
    is_correct: Optional[bool] = None


class MergeStrategyIn(BaseModel):
    global_action: Optional[str] = Field(default=None, pattern=r'^(skip|update|replace|keep_both)$')
    actions: Dict[str, str] = Field(default_factory=dict)


class TextImportIn(BaseModel):
    """Pasted text import into a topic."""
    content: str = Field(min_length=1)
    check_duplicates: bool = True
    merge_strategy: Optional[MergeStrategyIn] = None


class PinSetIn(BaseModel):
    pin: str = Field(pattern=r'^[0-9]{4}$')
    pin_confirmation: str


class PinExitIn(BaseModel):
    pin: str


class ContentPreviewIn(BaseModel):
    content: str = ''
    content_format: str = Field(default='markdown', pattern=r'^(plain|markdown|html)$')


class ContentConvertIn(BaseModel):
    content: str = ''
    from_format: str = Field(pattern=r'^(plain|markdown|html)$')
    to_format: str = Field(pattern=r'^(plain|markdown|html)$')


class VideoUrlIn(BaseModel):
    url: str = Field(min_length=1)


class ExportOptionsIn(BaseModel):
    format: str
    flashcard_ids: Optional[List[int]] = None
    include_inactive: bool = False
    include_metadata: bool = True
    deck_name: Optional[str] = None
