"""SQLModel data models.

This module defines the application's database tables using SQLModel.
Each class maps to a table and uses relationships where a parent owns
its children (subject → units → topics → flashcards/sessions/reviews).
List and mapping fields are stored in JSON columns.
"""

from typing import Optional
from sqlmodel import SQLModel, Field, Relationship
from sqlalchemy import Column, JSON
from datetime import datetime, date, time, timezone
from typing import List


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


_CASCADE = {"cascade": "all, delete-orphan"}


class User(SQLModel, table=True):
    """A registered parent account.

    Fields:
    - `username`: unique login name
    - `password_hash`: hashed password string (never store plaintext)
    - `token_version`: bumped to revoke every token issued so far
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, nullable=False, unique=True)
    password_hash: str
    token_version: int = 0
    created_at: datetime = Field(default_factory=_utcnow)


class UserPreferences(SQLModel, table=True):
    """Per-user kids mode PIN and the currently active kids mode state."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key='user.id', unique=True, index=True)
    kids_mode_pin: Optional[str] = None
    kids_mode_pin_attempts: int = 0
    kids_mode_pin_locked_until: Optional[datetime] = None
    kids_mode_active: bool = False
    kids_mode_child_id: Optional[int] = None
    kids_mode_entered_at: Optional[datetime] = None
    kids_mode_fingerprint: Optional[str] = None
    updated_at: datetime = Field(default_factory=_utcnow)


class Child(SQLModel, table=True):
    """A learner managed by a parent account."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key='user.id', index=True)
    name: str
    grade: str
    independence_level: int = 1
    created_at: datetime = Field(default_factory=_utcnow)
    sessions: List['LearningSession'] = Relationship(back_populates='child', sa_relationship_kwargs=_CASCADE)
    reviews: List['Review'] = Relationship(back_populates='child', sa_relationship_kwargs=_CASCADE)


class Subject(SQLModel, table=True):
    """A subject area owned by a parent (e.g. Mathematics)."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key='user.id', index=True)
    name: str
    color: str = '#3b82f6'
    created_at: datetime = Field(default_factory=_utcnow)
    units: List['Unit'] = Relationship(back_populates='subject', sa_relationship_kwargs=_CASCADE)


class Unit(SQLModel, table=True):
    """A block of topics inside a subject with an optional target date."""
    id: Optional[int] = Field(default=None, primary_key=True)
    subject_id: int = Field(foreign_key='subject.id', index=True)
    name: str
    description: Optional[str] = None
    target_completion_date: Optional[date] = None
    created_at: datetime = Field(default_factory=_utcnow)
    subject: Optional[Subject] = Relationship(back_populates='units')
    topics: List['Topic'] = Relationship(back_populates='unit', sa_relationship_kwargs=_CASCADE)


class Topic(SQLModel, table=True):
    """A single lesson inside a unit.

    `prerequisites` holds topic ids from the same unit. `content` is the
    learning material in `content_format` (plain, markdown or html).
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    unit_id: int = Field(foreign_key='unit.id', index=True)
    title: str
    description: Optional[str] = None
    estimated_minutes: int = 30
    prerequisites: List[int] = Field(default_factory=list, sa_column=Column(JSON))
    required: bool = True
    content: Optional[str] = None
    content_format: str = 'markdown'
    created_at: datetime = Field(default_factory=_utcnow)
    unit: Optional[Unit] = Relationship(back_populates='topics')
    flashcards: List['Flashcard'] = Relationship(back_populates='topic', sa_relationship_kwargs=_CASCADE)
    sessions: List['LearningSession'] = Relationship(back_populates='topic', sa_relationship_kwargs=_CASCADE)
    reviews: List['Review'] = Relationship(back_populates='topic', sa_relationship_kwargs=_CASCADE)


class LearningSession(SQLModel, table=True):
    """A planned or completed study session of a topic for a child."""
    id: Optional[int] = Field(default=None, primary_key=True)
    topic_id: int = Field(foreign_key='topic.id', index=True)
    child_id: int = Field(foreign_key='child.id', index=True)
    estimated_minutes: int = 30
    status: str = Field(default='backlog', index=True)
    commitment_type: str = 'preferred'
    scheduled_day_of_week: Optional[int] = None
    scheduled_start_time: Optional[time] = None
    scheduled_end_time: Optional[time] = None
    scheduled_date: Optional[date] = Field(default=None, index=True)
    notes: Optional[str] = None
    evidence_notes: Optional[str] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    topic: Optional[Topic] = Relationship(back_populates='sessions')
    child: Optional[Child] = Relationship(back_populates='sessions')


class Review(SQLModel, table=True):
    """Spaced repetition state for a topic (or one of its flashcards) per child."""
    id: Optional[int] = Field(default=None, primary_key=True)
    child_id: int = Field(foreign_key='child.id', index=True)
    topic_id: int = Field(foreign_key='topic.id', index=True)
    session_id: Optional[int] = Field(default=None, foreign_key='learningsession.id', index=True)
    flashcard_id: Optional[int] = Field(default=None, foreign_key='flashcard.id', index=True)
    interval_days: int = 1
    ease_factor: float = 2.5
    repetitions: int = 0
    status: str = Field(default='new', index=True)
    due_date: date = Field(index=True)
    last_reviewed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    child: Optional[Child] = Relationship(back_populates='reviews')
    topic: Optional[Topic] = Relationship(back_populates='reviews')


class Flashcard(SQLModel, table=True):
    """A study card attached to a topic.

    `unit_id` mirrors the topic's unit so unit-wide listings and duplicate
    checks do not need a join.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    topic_id: int = Field(foreign_key='topic.id', index=True)
    unit_id: int = Field(foreign_key='unit.id', index=True)
    card_type: str = Field(default='basic', index=True)
    question: str
    answer: str
    hint: Optional[str] = None
    choices: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    correct_choices: List[int] = Field(default_factory=list, sa_column=Column(JSON))
    cloze_text: Optional[str] = None
    cloze_answers: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    question_image_url: Optional[str] = None
    answer_image_url: Optional[str] = None
    occlusion_data: List[dict] = Field(default_factory=list, sa_column=Column(JSON))
    difficulty_level: str = 'medium'
    tags: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    is_active: bool = Field(default=True, index=True)
    import_source: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    topic: Optional[Topic] = Relationship(back_populates='flashcards')


class FlashcardImport(SQLModel, table=True):
    """History row written for every flashcard import."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key='user.id', index=True)
    unit_id: int = Field(foreign_key='unit.id')
    topic_id: int = Field(foreign_key='topic.id')
    source: str
    filename: Optional[str] = None
    total_cards: int = 0
    imported_cards: int = 0
    failed_cards: int = 0
    errors: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    status: str = 'completed'
    created_at: datetime = Field(default_factory=_utcnow)


class KidsModeAuditLog(SQLModel, table=True):
    """Security audit trail for kids mode (enter, exit, failed PINs...)."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key='user.id', index=True)
    child_id: Optional[int] = None
    action: str = Field(index=True)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata_json: dict = Field(default_factory=dict, sa_column=Column('metadata', JSON))
    created_at: datetime = Field(default_factory=_utcnow)
