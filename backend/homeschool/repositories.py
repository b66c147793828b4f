"""Repository classes encapsulating database operations.

Each repository is small and focused on a single aggregate (users,
children, curriculum, sessions, reviews, flashcards, kids mode).
Repositories return SQLModel objects and perform commits/refreshes where
appropriate. Ownership is resolved here by joining up to the owning
user, so a foreign id simply yields `None`.
"""

from datetime import date, datetime
from typing import Iterable, List, Optional
from sqlmodel import Session, select
from sqlalchemy import func
from . import models


class _BaseRepository:
    def __init__(self, session: Session):
        self.session = session

    def save(self, obj):
        """Persist `obj` (new or modified) and return it refreshed."""
        self.session.add(obj)
        self.session.commit()
        self.session.refresh(obj)
        return obj

    def delete(self, obj) -> None:
        self.session.delete(obj)
        self.session.commit()


class UserRepository(_BaseRepository):
    """CRUD operations for `User` objects."""

    def create(self, user: models.User) -> models.User:
        """Persist a new user and return the managed instance."""
        return self.save(user)

    def get_by_username(self, username: str) -> Optional[models.User]:
        """Return a `User` by username or `None` if not found."""
        stmt = select(models.User).where(models.User.username == username)
        return self.session.exec(stmt).first()

    def get(self, user_id: int) -> Optional[models.User]:
        """Get a `User` by primary key."""
        return self.session.get(models.User, user_id)

    def bump_token_version(self, user: models.User) -> models.User:
        """Invalidate every token issued to `user` so far."""
        user.token_version = (user.token_version or 0) + 1
        return self.save(user)


class PreferencesRepository(_BaseRepository):
    """Per-user kids mode preferences (one row per user)."""

    def get_for_user(self, user_id: int) -> Optional[models.UserPreferences]:
        stmt = select(models.UserPreferences).where(models.UserPreferences.user_id == user_id)
        return self.session.exec(stmt).first()

    def get_or_create(self, user_id: int) -> models.UserPreferences:
        prefs = self.get_for_user(user_id)
        if prefs is None:
            prefs = self.save(models.UserPreferences(user_id=user_id))
        return prefs


class ChildRepository(_BaseRepository):
    def get_for_user(self, child_id: int, user_id: int) -> Optional[models.Child]:
        child = self.session.get(models.Child, child_id)
        if child is None or child.user_id != user_id:
            return None
        return child

    def list_for_user(self, user_id: int) -> List[models.Child]:
        stmt = select(models.Child).where(models.Child.user_id == user_id).order_by(models.Child.name)
        return self.session.exec(stmt).all()


class SubjectRepository(_BaseRepository):
    def get_for_user(self, subject_id: int, user_id: int) -> Optional[models.Subject]:
        subject = self.session.get(models.Subject, subject_id)
        if subject is None or subject.user_id != user_id:
            return None
        return subject

    def list_for_user(self, user_id: int) -> List[models.Subject]:
        stmt = select(models.Subject).where(models.Subject.user_id == user_id).order_by(models.Subject.name)
        return self.session.exec(stmt).all()


class UnitRepository(_BaseRepository):
    def get_for_user(self, unit_id: int, user_id: int) -> Optional[models.Unit]:
        stmt = (
            select(models.Unit)
            .join(models.Subject, models.Unit.subject_id == models.Subject.id)
            .where(models.Unit.id == unit_id, models.Subject.user_id == user_id)
        )
        return self.session.exec(stmt).first()

    def list_for_subject(self, subject_id: int) -> List[models.Unit]:
        stmt = select(models.Unit).where(models.Unit.subject_id == subject_id).order_by(models.Unit.id)
        return self.session.exec(stmt).all()


class TopicRepository(_BaseRepository):
    def get(self, topic_id: int) -> Optional[models.Topic]:
        return self.session.get(models.Topic, topic_id)

    def get_for_user(self, topic_id: int, user_id: int) -> Optional[models.Topic]:
        stmt = (
            select(models.Topic)
            .join(models.Unit, models.Topic.unit_id == models.Unit.id)
            .join(models.Subject, models.Unit.subject_id == models.Subject.id)
            .where(models.Topic.id == topic_id, models.Subject.user_id == user_id)
        )
        return self.session.exec(stmt).first()

    def list_for_unit(self, unit_id: int) -> List[models.Topic]:
        stmt = select(models.Topic).where(models.Topic.unit_id == unit_id).order_by(models.Topic.id)
        return self.session.exec(stmt).all()

    def ids_for_unit(self, unit_id: int) -> List[int]:
        stmt = select(models.Topic.id).where(models.Topic.unit_id == unit_id)
        return list(self.session.exec(stmt).all())


class SessionRepository(_BaseRepository):
    """Learning sessions of a child."""

    def get_for_user(self, session_id: int, user_id: int) -> Optional[models.LearningSession]:
        stmt = (
            select(models.LearningSession)
            .join(models.Child, models.LearningSession.child_id == models.Child.id)
            .where(models.LearningSession.id == session_id, models.Child.user_id == user_id)
        )
        return self.session.exec(stmt).first()

    def list_for_child(self, child_id: int, status: Optional[str] = None) -> List[models.LearningSession]:
        stmt = select(models.LearningSession).where(models.LearningSession.child_id == child_id)
        if status:
            stmt = stmt.where(models.LearningSession.status == status)
        stmt = stmt.order_by(models.LearningSession.created_at, models.LearningSession.id)
        return self.session.exec(stmt).all()

    def scheduled_for_day(self, child_id: int, day: date) -> List[models.LearningSession]:
        """Sessions scheduled on `day`, by explicit date or by weekday slot."""
        stmt = select(models.LearningSession).where(
            models.LearningSession.child_id == child_id,
            models.LearningSession.status.in_(('scheduled', 'done')),
        )
        rows = self.session.exec(stmt).all()
        weekday = day.isoweekday()
        out = []
        for s in rows:
            if s.scheduled_date is not None:
                if s.scheduled_date == day:
                    out.append(s)
            elif s.scheduled_day_of_week == weekday and s.status == 'scheduled':
                out.append(s)
        return sorted(out, key=lambda s: (s.scheduled_start_time is None, s.scheduled_start_time or datetime.min.time()))

    def completed_topic_ids(self, child_id: int, topic_ids: Iterable[int]) -> List[int]:
        topic_ids = list(topic_ids)
        if not topic_ids:
            return []
        stmt = select(models.LearningSession.topic_id).where(
            models.LearningSession.child_id == child_id,
            models.LearningSession.status == 'done',
            models.LearningSession.topic_id.in_(topic_ids),
        ).distinct()
        return list(self.session.exec(stmt).all())


class ReviewRepository(_BaseRepository):
    """Spaced repetition rows for a child."""

    def get_for_user(self, review_id: int, user_id: int) -> Optional[models.Review]:
        stmt = (
            select(models.Review)
            .join(models.Child, models.Review.child_id == models.Child.id)
            .where(models.Review.id == review_id, models.Child.user_id == user_id)
        )
        return self.session.exec(stmt).first()

    def get_for_session(self, session_id: int) -> Optional[models.Review]:
        stmt = select(models.Review).where(models.Review.session_id == session_id)
        return self.session.exec(stmt).first()

    def flashcard_ids_for_child(self, child_id: int, flashcard_ids: Iterable[int]) -> List[int]:
        flashcard_ids = list(flashcard_ids)
        if not flashcard_ids:
            return []
        stmt = select(models.Review.flashcard_id).where(
            models.Review.child_id == child_id,
            models.Review.flashcard_id.in_(flashcard_ids),
        )
        return list(self.session.exec(stmt).all())

    def due(self, child_id: int, today: date, limit: int = 15) -> List[models.Review]:
        stmt = (
            select(models.Review)
            .where(
                models.Review.child_id == child_id,
                models.Review.due_date <= today,
                models.Review.status != 'mastered',
            )
            .order_by(models.Review.due_date, models.Review.created_at, models.Review.id)
            .limit(limit)
        )
        return self.session.exec(stmt).all()

    def new(self, child_id: int, limit: int = 5) -> List[models.Review]:
        stmt = (
            select(models.Review)
            .where(models.Review.child_id == child_id, models.Review.status == 'new')
            .order_by(models.Review.created_at, models.Review.id)
            .limit(limit)
        )
        return self.session.exec(stmt).all()

    def list_for_child(self, child_id: int) -> List[models.Review]:
        stmt = select(models.Review).where(models.Review.child_id == child_id)
        return self.session.exec(stmt).all()

    def count_due(self, child_id: int, today: date) -> int:
        stmt = select(func.count(models.Review.id)).where(
            models.Review.child_id == child_id,
            models.Review.due_date <= today,
            models.Review.status != 'mastered',
        )
        return self.session.exec(stmt).one()


class FlashcardRepository(_BaseRepository):
    def get_for_user(self, flashcard_id: int, user_id: int) -> Optional[models.Flashcard]:
        stmt = (
            select(models.Flashcard)
            .join(models.Unit, models.Flashcard.unit_id == models.Unit.id)
            .join(models.Subject, models.Unit.subject_id == models.Subject.id)
            .where(models.Flashcard.id == flashcard_id, models.Subject.user_id == user_id)
        )
        return self.session.exec(stmt).first()

    def get(self, flashcard_id: int) -> Optional[models.Flashcard]:
        return self.session.get(models.Flashcard, flashcard_id)

    def _filtered(self, stmt, include_inactive: bool, card_type: Optional[str], difficulty: Optional[str]):
        if not include_inactive:
            stmt = stmt.where(models.Flashcard.is_active == True)  # noqa: E712
        if card_type:
            stmt = stmt.where(models.Flashcard.card_type == card_type)
        if difficulty:
            stmt = stmt.where(models.Flashcard.difficulty_level == difficulty)
        return stmt.order_by(models.Flashcard.created_at, models.Flashcard.id)

    def list_for_topic(self, topic_id: int, include_inactive: bool = False, card_type: Optional[str] = None,
                       difficulty: Optional[str] = None) -> List[models.Flashcard]:
        stmt = select(models.Flashcard).where(models.Flashcard.topic_id == topic_id)
        return self.session.exec(self._filtered(stmt, include_inactive, card_type, difficulty)).all()

    def list_for_unit(self, unit_id: int, include_inactive: bool = False, card_type: Optional[str] = None,
                      difficulty: Optional[str] = None) -> List[models.Flashcard]:
        stmt = select(models.Flashcard).where(models.Flashcard.unit_id == unit_id)
        return self.session.exec(self._filtered(stmt, include_inactive, card_type, difficulty)).all()

    def recent_active_for_unit(self, unit_id: int, limit: int) -> List[models.Flashcard]:
        stmt = (
            select(models.Flashcard)
            .where(models.Flashcard.unit_id == unit_id, models.Flashcard.is_active == True)  # noqa: E712
            .order_by(models.Flashcard.created_at.desc(), models.Flashcard.id.desc())
            .limit(limit)
        )
        return self.session.exec(stmt).all()

    def list_by_ids(self, topic_id: int, flashcard_ids: Iterable[int]) -> List[models.Flashcard]:
        stmt = select(models.Flashcard).where(
            models.Flashcard.topic_id == topic_id,
            models.Flashcard.id.in_(list(flashcard_ids)),
        )
        return self.session.exec(stmt).all()

    def add_all(self, cards: List[models.Flashcard]) -> List[models.Flashcard]:
        """Insert several cards in one commit."""
        for c in cards:
            self.session.add(c)
        self.session.commit()
        for c in cards:
            self.session.refresh(c)
        return cards


class ImportRepository(_BaseRepository):
    def list_for_user(self, user_id: int, limit: int = 20) -> List[models.FlashcardImport]:
        stmt = (
            select(models.FlashcardImport)
            .where(models.FlashcardImport.user_id == user_id)
            .order_by(models.FlashcardImport.created_at.desc(), models.FlashcardImport.id.desc())
            .limit(limit)
        )
        return self.session.exec(stmt).all()


class AuditRepository(_BaseRepository):
    """Kids mode audit trail."""

    def list_for_user(self, user_id: int, limit: int = 50) -> List[models.KidsModeAuditLog]:
        stmt = (
            select(models.KidsModeAuditLog)
            .where(models.KidsModeAuditLog.user_id == user_id)
            .order_by(models.KidsModeAuditLog.created_at.desc(), models.KidsModeAuditLog.id.desc())
            .limit(limit)
        )
        return self.session.exec(stmt).all()
