"""Business logic services used by HTTP controllers.

This module holds small service classes that coordinate repositories,
the pure helpers under `utils/` and persistence. Services raise
`ValueError` for invalid input, `NotFoundError` (a `LookupError`) when a
resource does not exist for the calling user and `KidsModeError` for
kids mode refusals that carry a structured body; controllers translate
these to HTTP responses.
"""

import json
import logging
import os
import re
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional

import jwt
from passlib.context import CryptContext
from sqlmodel import Session

from . import models, repositories
from .config import settings
from .utils import card_types, duplicates, exporters, parsers, rich_content, srs
from .utils import kids_mode as policy
from .utils.rate_limit import InMemoryRateLimiter

PWD_CTX = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
JWT_SECRET = settings.JWT_SECRET
JWT_ALGORITHM = os.getenv('JWT_ALGORITHM', 'HS256')
JWT_EXPIRE_HOURS = int(os.getenv('JWT_EXPIRE_HOURS', '24'))

logger = logging.getLogger("homeschool.services")
kids_logger = logging.getLogger("homeschool.kids_mode")
import_logger = logging.getLogger("homeschool.imports")

# shared by every request in the process
pin_rate_limiter = InMemoryRateLimiter()

COLOR_PATTERN = re.compile(r'^#[0-9A-Fa-f]{6}$')
COLOR_OPTIONS = {
    '#ef4444': 'Red',
    '#f59e0b': 'Orange',
    '#eab308': 'Yellow',
    '#10b981': 'Green',
    '#3b82f6': 'Blue',
    '#6366f1': 'Indigo',
    '#8b5cf6': 'Purple',
    '#ec4899': 'Pink',
    '#6b7280': 'Gray',
    '#14b8a6': 'Teal',
}
INDEPENDENCE_LEVELS = {
    1: 'Guided (View Only)',
    2: 'Basic (Reorder Tasks)',
    3: 'Intermediate (Move Within Week)',
    4: 'Advanced (Plan Proposals)',
}
SESSION_STATUSES = ('backlog', 'planned', 'scheduled', 'done')
COMMITMENT_TYPES = {'fixed': 'Fixed', 'preferred': 'Preferred', 'flexible': 'Flexible'}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _event(log: logging.Logger, event: str, level: int = logging.INFO, **payload) -> None:
    log.log(level, "%s %s", event, json.dumps(payload, ensure_ascii=True, default=str))


def _apply(obj, data: Dict, fields) -> None:
    for name in fields:
        if name in data:
            setattr(obj, name, data[name])


class NotFoundError(LookupError):
    """The resource does not exist or belongs to another user."""


class KidsModeError(Exception):
    """A kids mode refusal with an HTTP status and a JSON body."""

    def __init__(self, status_code: int, detail: Dict, headers: Optional[Dict[str, str]] = None):
        super().__init__(detail.get('error'))
        self.status_code = status_code
        self.detail = detail
        self.headers = headers


# -- serialisation -----------------------------------------------------------

def independence_level_label(level: int) -> str:
    return INDEPENDENCE_LEVELS.get(level, 'Guided')


def child_capabilities(child: models.Child) -> Dict[str, bool]:
    level = child.independence_level
    return {
        'can_reorder_tasks': level >= 2,
        'can_move_sessions_in_week': level >= 3,
        'can_propose_weekly_plans': level >= 4,
        'is_view_only': level == 1,
    }


def child_out(child: models.Child) -> Dict:
    return {
        'id': child.id,
        'name': child.name,
        'grade': child.grade,
        'independence_level': child.independence_level,
        'independence_level_label': independence_level_label(child.independence_level),
        'capabilities': child_capabilities(child),
    }


def subject_out(subject: models.Subject) -> Dict:
    return {'id': subject.id, 'name': subject.name, 'color': subject.color}


def unit_out(unit: models.Unit, today: Optional[date] = None) -> Dict:
    today = today or date.today()
    target = unit.target_completion_date
    return {
        'id': unit.id,
        'subject_id': unit.subject_id,
        'name': unit.name,
        'description': unit.description,
        'target_completion_date': target.isoformat() if target else None,
        'is_overdue': bool(target and target < today),
        'days_until_target': (target - today).days if target else None,
    }


def estimated_duration(minutes: int) -> str:
    """`45 min`, `2h` or `1h 30m`."""
    if minutes < 60:
        return f"{minutes} min"
    hours, rest = divmod(minutes, 60)
    return f"{hours}h" if rest == 0 else f"{hours}h {rest}m"


def topic_out(topic: models.Topic) -> Dict:
    return {
        'id': topic.id,
        'unit_id': topic.unit_id,
        'title': topic.title,
        'description': topic.description,
        'estimated_minutes': topic.estimated_minutes,
        'estimated_duration': estimated_duration(topic.estimated_minutes),
        'prerequisites': list(topic.prerequisites or []),
        'required': topic.required,
        'content': topic.content,
        'content_format': topic.content_format,
    }


def formatted_duration(minutes: int) -> str:
    """`45m`, `2h` or `1h 30m`."""
    if minutes < 60:
        return f"{minutes}m"
    hours, rest = divmod(minutes, 60)
    return f"{hours}h" if rest == 0 else f"{hours}h {rest}m"


def session_out(s: models.LearningSession) -> Dict:
    return {
        'id': s.id,
        'topic_id': s.topic_id,
        'child_id': s.child_id,
        'status': s.status,
        'estimated_minutes': s.estimated_minutes,
        'formatted_duration': formatted_duration(s.estimated_minutes),
        'commitment_type': s.commitment_type,
        'commitment_type_label': COMMITMENT_TYPES.get(s.commitment_type, 'Unknown'),
        'can_be_rescheduled': s.commitment_type != 'fixed',
        'scheduled_day_of_week': s.scheduled_day_of_week,
        'scheduled_start_time': s.scheduled_start_time.strftime('%H:%M') if s.scheduled_start_time else None,
        'scheduled_end_time': s.scheduled_end_time.strftime('%H:%M') if s.scheduled_end_time else None,
        'scheduled_date': s.scheduled_date.isoformat() if s.scheduled_date else None,
        'notes': s.notes,
        'evidence_notes': s.evidence_notes,
        'completed_at': s.completed_at.isoformat() if s.completed_at else None,
    }


def card_dict(card: models.Flashcard) -> Dict:
    """Plain dictionary of a flashcard, the shape every card helper expects."""
    return {
        'id': card.id,
        'topic_id': card.topic_id,
        'unit_id': card.unit_id,
        'card_type': card.card_type,
        'card_type_name': card_types.CARD_TYPES.get(card.card_type, card.card_type),
        'question': card.question,
        'answer': card.answer,
        'hint': card.hint,
        'choices': list(card.choices or []),
        'correct_choices': list(card.correct_choices or []),
        'cloze_text': card.cloze_text,
        'cloze_answers': list(card.cloze_answers or []),
        'question_image_url': card.question_image_url,
        'answer_image_url': card.answer_image_url,
        'occlusion_data': list(card.occlusion_data or []),
        'difficulty_level': card.difficulty_level,
        'tags': list(card.tags or []),
        'is_active': card.is_active,
        'import_source': card.import_source,
        'created_at': card.created_at,
        'updated_at': card.updated_at,
    }


def card_out(card: models.Flashcard) -> Dict:
    out = card_dict(card)
    out['created_at'] = card.created_at.isoformat() if card.created_at else None
    out['updated_at'] = card.updated_at.isoformat() if card.updated_at else None
    return out


def review_out(review: models.Review, today: Optional[date] = None) -> Dict:
    return {
        'id': review.id,
        'child_id': review.child_id,
        'topic_id': review.topic_id,
        'session_id': review.session_id,
        'flashcard_id': review.flashcard_id,
        'review_type': 'flashcard' if review.flashcard_id else 'topic',
        'interval_days': review.interval_days,
        'formatted_interval': srs.formatted_interval(review.interval_days),
        'ease_factor': review.ease_factor,
        'repetitions': review.repetitions,
        'status': review.status,
        'due_date': review.due_date.isoformat() if review.due_date else None,
        'days_until_due': srs.days_until_due(review, today),
        'is_overdue': srs.is_overdue(review, today),
        'priority': srs.priority(review, today),
        'last_reviewed_at': review.last_reviewed_at.isoformat() if review.last_reviewed_at else None,
    }


# -- services ----------------------------------------------------------------

class AuthService:
    """Authentication related operations (register + authenticate)."""
    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)

    def register(self, username: str, password: str) -> models.User:
        """Create a new user with a hashed password.

        Returns the persisted `User` instance.
        """
        hashed = PWD_CTX.hash(password)
        u = models.User(username=username, password_hash=hashed)
        return self.user_repo.create(u)

    def issue_token(self, user: models.User) -> str:
        """Sign a token carrying a unique id and the user's token version."""
        expire = _now() + timedelta(hours=JWT_EXPIRE_HOURS)
        payload = {
            "user_id": user.id,
            "username": user.username,
            "exp": int(expire.timestamp()),
            "jti": uuid.uuid4().hex,
            "tv": user.token_version,
        }
        return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)

    def authenticate(self, username: str, password: str):
        """Verify credentials and return a signed JWT token on success.

        Returns `None` if authentication fails.
        """
        user = self.user_repo.get_by_username(username)
        if not user:
            return None
        if not PWD_CTX.verify(password, user.password_hash):
            return None
        return self.issue_token(user)


class ChildService:
    """Children of a parent account and the child's today view."""
    def __init__(self, session: Session):
        self.session = session
        self.repo = repositories.ChildRepository(session)
        self.session_repo = repositories.SessionRepository(session)
        self.review_repo = repositories.ReviewRepository(session)

    def get(self, user_id: int, child_id: int) -> models.Child:
        child = self.repo.get_for_user(child_id, user_id)
        if child is None:
            raise NotFoundError('child not found')
        return child

    def list(self, user_id: int) -> List[models.Child]:
        return self.repo.list_for_user(user_id)

    def create(self, user_id: int, data: Dict) -> models.Child:
        level = data.get('independence_level') or 1
        if level not in INDEPENDENCE_LEVELS:
            raise ValueError('independence_level must be between 1 and 4')
        child = models.Child(user_id=user_id, name=data['name'], grade=data['grade'], independence_level=level)
        return self.repo.save(child)

    def update(self, user_id: int, child_id: int, data: Dict) -> models.Child:
        child = self.get(user_id, child_id)
        if data.get('independence_level') is not None and data['independence_level'] not in INDEPENDENCE_LEVELS:
            raise ValueError('independence_level must be between 1 and 4')
        _apply(child, {k: v for k, v in data.items() if v is not None}, ('name', 'grade', 'independence_level'))
        return self.repo.save(child)

    def set_independence_level(self, user_id: int, child_id: int, level: int) -> models.Child:
        return self.update(user_id, child_id, {'independence_level': level})

    def delete(self, user_id: int, child_id: int) -> None:
        self.repo.delete(self.get(user_id, child_id))

    def today(self, user_id: int, child_id: int, today: Optional[date] = None) -> Dict:
        """Everything the child's today screen shows."""
        today = today or date.today()
        child = self.get(user_id, child_id)
        sessions = self.session_repo.scheduled_for_day(child.id, today)
        queue = ReviewService(self.session).queue(child.id, today)
        topics = {s.topic_id: self.session.get(models.Topic, s.topic_id) for s in sessions}
        items = []
        for s in sessions:
            item = session_out(s)
            topic = topics.get(s.topic_id)
            item['topic_title'] = topic.title if topic else None
            items.append(item)
        return {
            'child': child_out(child),
            'date': today.isoformat(),
            'sessions': items,
            'completed_count': sum(1 for s in sessions if s.status == 'done'),
            'review_queue_size': len(queue),
            'due_reviews': self.review_repo.count_due(child.id, today),
            'new_reviews': sum(1 for r in queue if r.status == 'new'),
        }


class CurriculumService:
    """Subjects, units and topics owned by a parent."""
    def __init__(self, session: Session):
        self.session = session
        self.subject_repo = repositories.SubjectRepository(session)
        self.unit_repo = repositories.UnitRepository(session)
        self.topic_repo = repositories.TopicRepository(session)
        self.session_repo = repositories.SessionRepository(session)
        self.child_repo = repositories.ChildRepository(session)

    # subjects

    @staticmethod
    def color_options() -> Dict[str, str]:
        return dict(COLOR_OPTIONS)

    def _check_color(self, color: Optional[str]) -> None:
        if color is not None and not COLOR_PATTERN.match(color):
            raise ValueError('color must be a hex value like #3b82f6')

    def get_subject(self, user_id: int, subject_id: int) -> models.Subject:
        subject = self.subject_repo.get_for_user(subject_id, user_id)
        if subject is None:
            raise NotFoundError('subject not found')
        return subject

    def list_subjects(self, user_id: int) -> List[models.Subject]:
        return self.subject_repo.list_for_user(user_id)

    def create_subject(self, user_id: int, name: str, color: str = '#3b82f6') -> models.Subject:
        self._check_color(color)
        if not (name or '').strip():
            raise ValueError('name is required')
        return self.subject_repo.save(models.Subject(user_id=user_id, name=name.strip(), color=color))

    def update_subject(self, user_id: int, subject_id: int, data: Dict) -> models.Subject:
        subject = self.get_subject(user_id, subject_id)
        self._check_color(data.get('color'))
        _apply(subject, {k: v for k, v in data.items() if v is not None}, ('name', 'color'))
        return self.subject_repo.save(subject)

    def delete_subject(self, user_id: int, subject_id: int) -> None:
        subject = self.get_subject(user_id, subject_id)
        topic_ids = [t.id for u in subject.units for t in u.topics]
        self.subject_repo.delete(subject)
        for topic_id in topic_ids:
            rich_content.cleanup_content_images(settings.MEDIA_ROOT, topic_id)

    # units

    def get_unit(self, user_id: int, unit_id: int) -> models.Unit:
        unit = self.unit_repo.get_for_user(unit_id, user_id)
        if unit is None:
            raise NotFoundError('unit not found')
        return unit

    def list_units(self, user_id: int, subject_id: int) -> List[models.Unit]:
        subject = self.get_subject(user_id, subject_id)
        return self.unit_repo.list_for_subject(subject.id)

    def create_unit(self, user_id: int, subject_id: int, data: Dict) -> models.Unit:
        subject = self.get_subject(user_id, subject_id)
        unit = models.Unit(
            subject_id=subject.id,
            name=data['name'],
            description=data.get('description'),
            target_completion_date=data.get('target_completion_date'),
        )
        return self.unit_repo.save(unit)

    def update_unit(self, user_id: int, unit_id: int, data: Dict) -> models.Unit:
        unit = self.get_unit(user_id, unit_id)
        if data.get('name') is None:
            data = {k: v for k, v in data.items() if k != 'name'}
        _apply(unit, data, ('name', 'description', 'target_completion_date'))
        return self.unit_repo.save(unit)

    def delete_unit(self, user_id: int, unit_id: int) -> None:
        unit = self.get_unit(user_id, unit_id)
        topic_ids = [t.id for t in unit.topics]
        self.unit_repo.delete(unit)
        for topic_id in topic_ids:
            rich_content.cleanup_content_images(settings.MEDIA_ROOT, topic_id)

    def unit_progress(self, user_id: int, unit_id: int, child_id: int) -> Dict:
        """Completion of a unit for one child.

        A topic counts as completed when the child has a `done` session
        for it; the percentage only considers required topics.
        """
        unit = self.get_unit(user_id, unit_id)
        if self.child_repo.get_for_user(child_id, user_id) is None:
            raise NotFoundError('child not found')
        topics = self.topic_repo.list_for_unit(unit.id)
        required = [t for t in topics if t.required]
        completed = set(self.session_repo.completed_topic_ids(child_id, [t.id for t in topics]))
        completed_required = [t for t in required if t.id in completed]
        percentage = round(len(completed_required) / len(required) * 100, 2) if required else 0
        can_complete = len(completed_required) >= len(required)
        progress = {
            'unit_id': unit.id,
            'child_id': child_id,
            'total_topics': len(topics),
            'required_topics': len(required),
            'completed_topics': len(completed),
            'completed_required_topics': len(completed_required),
            'completion_percentage': percentage,
            'can_complete': can_complete,
            'remaining_required': len(required) - len(completed_required),
            'topics_breakdown': {
                'completed': sorted(completed),
                'required_remaining': [t.id for t in required if t.id not in completed],
                'optional_remaining': [t.id for t in topics if not t.required and t.id not in completed],
            },
        }
        progress['completion_status'] = self.completion_status(progress)
        remaining = [t for t in topics if t.id not in completed]
        progress['next_topics'] = [topic_out(t) for t in self.next_topics(remaining)]
        return progress

    @staticmethod
    def completion_status(progress: Dict) -> str:
        if progress['can_complete']:
            return 'Complete'
        pct = progress['completion_percentage']
        if pct >= 75:
            return 'Nearly Complete'
        if pct >= 50:
            return 'In Progress'
        if pct >= 25:
            return 'Started'
        return 'Not Started'

    @staticmethod
    def next_topics(remaining: List[models.Topic], limit: int = 3) -> List[models.Topic]:
        """Uncompleted required topics first, then optional ones."""
        ordered = [t for t in remaining if t.required] + [t for t in remaining if not t.required]
        return ordered[:limit]

    # topics

    def get_topic(self, user_id: int, topic_id: int) -> models.Topic:
        topic = self.topic_repo.get_for_user(topic_id, user_id)
        if topic is None:
            raise NotFoundError('topic not found')
        return topic

    def list_topics(self, user_id: int, unit_id: int) -> List[models.Topic]:
        unit = self.get_unit(user_id, unit_id)
        return self.topic_repo.list_for_unit(unit.id)

    def _check_prerequisites(self, unit_id: int, prerequisites: List[int], topic_id: Optional[int] = None) -> List[int]:
        prerequisites = list(dict.fromkeys(prerequisites or []))
        if topic_id is not None and topic_id in prerequisites:
            raise ValueError('a topic cannot be its own prerequisite')
        allowed = set(self.topic_repo.ids_for_unit(unit_id))
        unknown = [p for p in prerequisites if p not in allowed]
        if unknown:
            raise ValueError(f"prerequisites must be topics of the same unit: {unknown}")
        return prerequisites

    def create_topic(self, user_id: int, unit_id: int, data: Dict) -> models.Topic:
        unit = self.get_unit(user_id, unit_id)
        content_format = data.get('content_format') or 'markdown'
        if content_format not in rich_content.CONTENT_FORMATS:
            raise ValueError('content_format must be plain, markdown or html')
        topic = models.Topic(
            unit_id=unit.id,
            title=data['title'],
            description=data.get('description'),
            estimated_minutes=data.get('estimated_minutes') or 30,
            prerequisites=self._check_prerequisites(unit.id, data.get('prerequisites') or []),
            required=data.get('required', True),
            content=data.get('content'),
            content_format=content_format,
        )
        return self.topic_repo.save(topic)

    def update_topic(self, user_id: int, topic_id: int, data: Dict) -> models.Topic:
        topic = self.get_topic(user_id, topic_id)
        data = {k: v for k, v in data.items() if v is not None}
        if 'prerequisites' in data:
            data['prerequisites'] = self._check_prerequisites(topic.unit_id, data['prerequisites'], topic.id)
        _apply(topic, data, ('title', 'description', 'estimated_minutes', 'prerequisites', 'required'))
        return self.topic_repo.save(topic)

    def delete_topic(self, user_id: int, topic_id: int) -> None:
        topic = self.get_topic(user_id, topic_id)
        self.topic_repo.delete(topic)
        rich_content.cleanup_content_images(settings.MEDIA_ROOT, topic_id)


class LearningSessionService:
    """Planning and completing study sessions."""
    def __init__(self, session: Session):
        self.session = session
        self.repo = repositories.SessionRepository(session)
        self.review_repo = repositories.ReviewRepository(session)
        self.child_repo = repositories.ChildRepository(session)
        self.topic_repo = repositories.TopicRepository(session)

    def get(self, user_id: int, session_id: int) -> models.LearningSession:
        s = self.repo.get_for_user(session_id, user_id)
        if s is None:
            raise NotFoundError('session not found')
        return s

    def list_for_child(self, user_id: int, child_id: int, status: Optional[str] = None) -> List[models.LearningSession]:
        if self.child_repo.get_for_user(child_id, user_id) is None:
            raise NotFoundError('child not found')
        if status is not None and status not in SESSION_STATUSES:
            raise ValueError(f"status must be one of {', '.join(SESSION_STATUSES)}")
        return self.repo.list_for_child(child_id, status)

    def create(self, user_id: int, data: Dict) -> models.LearningSession:
        child = self.child_repo.get_for_user(data['child_id'], user_id)
        if child is None:
            raise NotFoundError('child not found')
        topic = self.topic_repo.get_for_user(data['topic_id'], user_id)
        if topic is None:
            raise NotFoundError('topic not found')
        s = models.LearningSession(
            topic_id=topic.id,
            child_id=child.id,
            estimated_minutes=data.get('estimated_minutes') or topic.estimated_minutes,
            commitment_type=data.get('commitment_type') or 'preferred',
            notes=data.get('notes'),
        )
        self._set_status(s, data.get('status') or 'backlog')
        return self.repo.save(s)

    def _set_status(self, s: models.LearningSession, status: str) -> None:
        if status not in SESSION_STATUSES:
            raise ValueError(f"status must be one of {', '.join(SESSION_STATUSES)}")
        s.status = status
        if status == 'done':
            s.completed_at = s.completed_at or _now()
        else:
            s.completed_at = None

    def _after_save(self, s: models.LearningSession) -> models.LearningSession:
        if s.status == 'done':
            ReviewService(self.session).create_from_session(s)
        return s

    def update(self, user_id: int, session_id: int, data: Dict) -> models.LearningSession:
        s = self.get(user_id, session_id)
        data = {k: v for k, v in data.items() if v is not None}
        if 'commitment_type' in data and data['commitment_type'] not in COMMITMENT_TYPES:
            raise ValueError('commitment_type must be fixed, preferred or flexible')
        if 'status' in data:
            self._set_status(s, data['status'])
        _apply(s, data, ('commitment_type', 'estimated_minutes', 'notes', 'evidence_notes'))
        return self._after_save(self.repo.save(s))

    def schedule(self, user_id: int, session_id: int, slot: Dict) -> models.LearningSession:
        s = self.get(user_id, session_id)
        if s.status == 'done':
            raise ValueError('completed sessions cannot be scheduled')
        if slot['scheduled_end_time'] <= slot['scheduled_start_time']:
            raise ValueError('scheduled_end_time must be after scheduled_start_time')
        _apply(s, slot, ('scheduled_day_of_week', 'scheduled_start_time', 'scheduled_end_time', 'scheduled_date'))
        self._set_status(s, 'scheduled')
        return self.repo.save(s)

    def unschedule(self, user_id: int, session_id: int) -> models.LearningSession:
        s = self.get(user_id, session_id)
        s.scheduled_day_of_week = None
        s.scheduled_start_time = None
        s.scheduled_end_time = None
        s.scheduled_date = None
        self._set_status(s, 'planned')
        return self.repo.save(s)

    def complete(self, user_id: int, session_id: int, evidence_notes: Optional[str] = None) -> models.LearningSession:
        s = self.get(user_id, session_id)
        self._set_status(s, 'done')
        if evidence_notes is not None:
            s.evidence_notes = evidence_notes
        s = self._after_save(self.repo.save(s))
        _event(logger, 'session_completed', user_id=user_id, session_id=s.id, child_id=s.child_id)
        return s

    def delete(self, user_id: int, session_id: int) -> None:
        s = self.get(user_id, session_id)
        review = self.review_repo.get_for_session(s.id)
        if review is not None:
            self.session.delete(review)
        self.repo.delete(s)


class ReviewService:
    """Spaced repetition queue and result processing."""
    def __init__(self, session: Session):
        self.session = session
        self.repo = repositories.ReviewRepository(session)
        self.child_repo = repositories.ChildRepository(session)
        self.topic_repo = repositories.TopicRepository(session)
        self.flashcard_repo = repositories.FlashcardRepository(session)

    def _child(self, user_id: int, child_id: int) -> models.Child:
        child = self.child_repo.get_for_user(child_id, user_id)
        if child is None:
            raise NotFoundError('child not found')
        return child

    def get(self, user_id: int, review_id: int) -> models.Review:
        review = self.repo.get_for_user(review_id, user_id)
        if review is None:
            raise NotFoundError('review not found')
        return review

    def create_from_session(self, s: models.LearningSession, today: Optional[date] = None) -> models.Review:
        """Return the session's review, creating it (due tomorrow) on first completion."""
        existing = self.repo.get_for_session(s.id)
        if existing is not None:
            return existing
        review = models.Review(
            child_id=s.child_id,
            topic_id=s.topic_id,
            session_id=s.id,
            interval_days=1,
            ease_factor=srs.DEFAULT_EASE_FACTOR,
            repetitions=0,
            status='new',
            due_date=(today or date.today()) + timedelta(days=1),
        )
        return self.repo.save(review)

    def enrol_flashcards(self, user_id: int, child_id: int, topic_id: int, today: Optional[date] = None) -> Dict:
        """Add a new review for every active card of the topic the child does not have yet."""
        child = self._child(user_id, child_id)
        topic = self.topic_repo.get_for_user(topic_id, user_id)
        if topic is None:
            raise NotFoundError('topic not found')
        cards = self.flashcard_repo.list_for_topic(topic.id)
        enrolled = set(self.repo.flashcard_ids_for_child(child.id, [c.id for c in cards]))
        due = (today or date.today()) + timedelta(days=1)
        created = 0
        for card in cards:
            if card.id in enrolled:
                continue
            self.session.add(models.Review(
                child_id=child.id,
                topic_id=topic.id,
                flashcard_id=card.id,
                status='new',
                due_date=due,
            ))
            created += 1
        self.session.commit()
        return {'created': created, 'skipped': len(cards) - created}

    def due(self, child_id: int, today: Optional[date] = None, limit: int = 15) -> List[models.Review]:
        return self.repo.due(child_id, today or date.today(), limit)

    def new(self, child_id: int, limit: int = 5) -> List[models.Review]:
        return self.repo.new(child_id, limit)

    def queue(self, child_id: int, today: Optional[date] = None) -> List[models.Review]:
        return srs.interleave_queue(self.due(child_id, today), self.new(child_id))

    def queue_for_child(self, user_id: int, child_id: int, today: Optional[date] = None) -> List[Dict]:
        child = self._child(user_id, child_id)
        return [self.describe(r, today) for r in self.queue(child.id, today)]

    def describe(self, review: models.Review, today: Optional[date] = None) -> Dict:
        """Review plus what the learner is reviewing (topic or flashcard)."""
        out = review_out(review, today)
        topic = self.topic_repo.get(review.topic_id)
        out['topic_title'] = topic.title if topic else None
        if review.flashcard_id:
            card = self.flashcard_repo.get(review.flashcard_id)
            out['flashcard'] = card_out(card) if card else None
        return out

    def next_review_summary(self, review: models.Review) -> Dict:
        out = {
            'id': review.id,
            'status': review.status,
            'repetitions': review.repetitions,
            'is_flashcard_review': review.flashcard_id is not None,
            'is_topic_review': review.flashcard_id is None,
        }
        if review.flashcard_id:
            card = self.flashcard_repo.get(review.flashcard_id)
            unit = self.session.get(models.Unit, card.unit_id) if card else None
            out['flashcard_title'] = card.question if card else 'Unknown Flashcard'
            out['card_type'] = card.card_type if card else card_types.BASIC
            out['unit_name'] = unit.name if unit else 'Unknown Unit'
        else:
            topic = self.topic_repo.get(review.topic_id)
            out['topic_title'] = topic.title if topic else None
        return out

    def process(self, user_id: int, review_id: int, submitted: Dict, today: Optional[date] = None) -> Dict:
        """Apply a rating to a review.

        Flashcard answers are checked first; when the client did not
        self-assess and the answer is wrong, a `good`/`easy` rating is
        downgraded to `again`.
        """
        review = self.get(user_id, review_id)
        rating = submitted['result']
        if rating not in srs.RESULTS:
            raise ValueError(f"result must be one of {', '.join(srs.RESULTS)}")
        validation = None
        if review.flashcard_id:
            card = self.flashcard_repo.get(review.flashcard_id)
            if card is None:
                raise NotFoundError('flashcard not found')
            validation = card_types.validate_answer(card_dict(card), submitted)
            if submitted.get('is_correct') is None and validation['is_correct'] is False:
                if rating in ('good', 'easy'):
                    rating = 'again'
        result = srs.apply_result(review, rating, today=today)
        self.repo.save(review)
        if validation is not None:
            result['answer_validation'] = validation
        result['rating'] = rating
        upcoming = [r for r in self.queue(review.child_id, today) if r.id != review.id]
        next_review = upcoming[0] if upcoming else None
        _event(logger, 'review_processed', review_id=review.id, child_id=review.child_id,
               rating=rating, status=review.status, interval=review.interval_days)
        return {
            'success': True,
            'result': result,
            'next_review': self.next_review_summary(next_review) if next_review else None,
            'session_complete': next_review is None,
            'review_type': 'flashcard' if review.flashcard_id else 'topic',
        }

    def stats(self, user_id: int, child_id: int, today: Optional[date] = None) -> Dict:
        today = today or date.today()
        child = self._child(user_id, child_id)
        reviews = self.repo.list_for_child(child.id)
        by_status = {s: 0 for s in srs.STATUSES}
        for r in reviews:
            by_status[r.status] = by_status.get(r.status, 0) + 1

        def reviewed_since(days: int) -> int:
            cutoff = datetime.combine(today - timedelta(days=days), datetime.min.time(), tzinfo=timezone.utc)
            return sum(1 for r in reviews if r.last_reviewed_at and policy.as_utc(r.last_reviewed_at) >= cutoff)

        return {
            'child_id': child.id,
            'total': len(reviews),
            'by_status': by_status,
            'due_today': sum(1 for r in reviews if r.status != 'mastered' and r.due_date <= today),
            'new': by_status.get('new', 0),
            'overdue': sum(1 for r in reviews if r.status != 'mastered' and r.due_date < today),
            'reviewed_last_7_days': reviewed_since(7),
            'reviewed_last_30_days': reviewed_since(30),
        }


CARD_FIELDS = (
    'card_type', 'question', 'answer', 'hint', 'choices', 'correct_choices', 'cloze_text',
    'cloze_answers', 'question_image_url', 'answer_image_url', 'occlusion_data',
    'difficulty_level', 'tags',
)
LIST_FIELDS = ('choices', 'correct_choices', 'cloze_answers', 'occlusion_data', 'tags')


def _card_values(data: Dict) -> Dict:
    values = {name: data.get(name) for name in CARD_FIELDS}
    for name in LIST_FIELDS:
        values[name] = list(values[name] or [])
    values['card_type'] = values['card_type'] or card_types.BASIC
    values['difficulty_level'] = values['difficulty_level'] or 'medium'
    return values


class FlashcardService:
    """Flashcards of a topic."""
    def __init__(self, session: Session):
        self.session = session
        self.repo = repositories.FlashcardRepository(session)
        self.topic_repo = repositories.TopicRepository(session)
        self.unit_repo = repositories.UnitRepository(session)

    @staticmethod
    def prepare(data: Dict) -> Dict:
        """Process the card for its type and raise ValueError when invalid."""
        card = card_types.process_card_by_type(_card_values(data))
        errors = card_types.validate_card_data(card)
        if errors:
            raise ValueError('; '.join(errors))
        return card

    def _topic(self, user_id: int, topic_id: int) -> models.Topic:
        topic = self.topic_repo.get_for_user(topic_id, user_id)
        if topic is None:
            raise NotFoundError('topic not found')
        return topic

    def get(self, user_id: int, flashcard_id: int) -> models.Flashcard:
        card = self.repo.get_for_user(flashcard_id, user_id)
        if card is None:
            raise NotFoundError('flashcard not found')
        return card

    def create(self, user_id: int, topic_id: int, data: Dict) -> models.Flashcard:
        topic = self._topic(user_id, topic_id)
        values = self.prepare(data)
        card = models.Flashcard(topic_id=topic.id, unit_id=topic.unit_id, **values)
        return self.repo.save(card)

    def list_for_topic(self, user_id: int, topic_id: int, include_inactive: bool = False,
                       card_type: Optional[str] = None, difficulty: Optional[str] = None) -> List[models.Flashcard]:
        topic = self._topic(user_id, topic_id)
        return self.repo.list_for_topic(topic.id, include_inactive, card_type, difficulty)

    def list_for_unit(self, user_id: int, unit_id: int, include_inactive: bool = False,
                      card_type: Optional[str] = None, difficulty: Optional[str] = None) -> List[models.Flashcard]:
        unit = self.unit_repo.get_for_user(unit_id, user_id)
        if unit is None:
            raise NotFoundError('unit not found')
        return self.repo.list_for_unit(unit.id, include_inactive, card_type, difficulty)

    def update(self, user_id: int, flashcard_id: int, data: Dict) -> models.Flashcard:
        card = self.get(user_id, flashcard_id)
        merged = card_dict(card)
        changes = {k: v for k, v in data.items() if v is not None}
        if 'question' in changes and 'cloze_text' not in changes:
            # a new question carries its own blanks
            merged['cloze_text'] = None
        merged.update(changes)
        values = self.prepare(merged)
        for name, value in values.items():
            if name in CARD_FIELDS:
                setattr(card, name, value)
        card.updated_at = _now()
        return self.repo.save(card)

    def set_active(self, user_id: int, flashcard_id: int, is_active: bool) -> models.Flashcard:
        card = self.get(user_id, flashcard_id)
        card.is_active = is_active
        card.updated_at = _now()
        return self.repo.save(card)

    def bulk_status(self, user_id: int, topic_id: int, flashcard_ids: List[int], is_active: bool) -> int:
        """Activate or deactivate cards of one topic; returns how many changed."""
        topic = self._topic(user_id, topic_id)
        cards = self.repo.list_by_ids(topic.id, flashcard_ids)
        for card in cards:
            card.is_active = is_active
            card.updated_at = _now()
            self.session.add(card)
        self.session.commit()
        return len(cards)


class ImportService:
    """Import flashcards from files or pasted text into a topic."""
    def __init__(self, session: Session):
        self.session = session
        self.flashcard_repo = repositories.FlashcardRepository(session)
        self.topic_repo = repositories.TopicRepository(session)
        self.import_repo = repositories.ImportRepository(session)

    def _topic(self, user_id: int, topic_id: int) -> models.Topic:
        topic = self.topic_repo.get_for_user(topic_id, user_id)
        if topic is None:
            raise NotFoundError('topic not found')
        return topic

    def _split_valid(self, cards: List[Dict]):
        valid, errors = [], []
        for index, card in enumerate(cards):
            problems = parsers.card_problems(card)
            if not problems:
                problems = card_types.validate_card_data(card)
            if problems:
                errors.append(f"Row {index + 1}: " + ', '.join(problems))
            else:
                valid.append(card)
        return valid, errors

    def _existing(self, unit_id: int) -> List[Dict]:
        cards = self.flashcard_repo.recent_active_for_unit(unit_id, duplicates.MAX_COMPARISON_LIMIT)
        return [card_dict(c) for c in cards]

    def preview(self, user_id: int, topic_id: int, file_bytes: bytes, filename: str) -> Dict:
        """Parse and check a file without writing anything."""
        topic = self._topic(user_id, topic_id)
        parsed = parsers.parse_file_to_cards(file_bytes, filename)
        return self._preview(topic, parsed)

    def preview_text(self, user_id: int, topic_id: int, content: str) -> Dict:
        topic = self._topic(user_id, topic_id)
        parsed = parsers.parse_text(content)
        return self._preview(topic, {'cards': parsed['cards'], 'errors': parsed['errors'], 'source': 'text'})

    def _preview(self, topic: models.Topic, parsed: Dict) -> Dict:
        valid, row_errors = self._split_valid(parsed['cards'])
        detected = duplicates.detect_duplicates(valid, self._existing(topic.unit_id))
        return {
            'source': parsed['source'],
            'total': len(parsed['cards']),
            'valid': len(valid),
            'errors': parsed['errors'] + row_errors,
            'cards': valid,
            'duplicates': detected['duplicates'],
            'duplicate_count': detected['duplicate_count'],
            'unique_count': detected['unique_count'],
        }

    def import_file(self, user_id: int, topic_id: int, file_bytes: bytes, filename: str,
                    check_duplicates: bool = True, merge_strategy: Optional[Dict] = None, dry_run: bool = False) -> Dict:
        """Parse `filename` contents and create `Flashcard` rows in the topic.

        With duplicates present and no `merge_strategy`, nothing is written
        and the duplicates are returned for resolution.
        """
        topic = self._topic(user_id, topic_id)
        parsed = parsers.parse_file_to_cards(file_bytes, filename)
        return self._import(user_id, topic, parsed, filename, check_duplicates, merge_strategy, dry_run)

    def import_text(self, user_id: int, topic_id: int, content: str, check_duplicates: bool = True,
                    merge_strategy: Optional[Dict] = None, dry_run: bool = False) -> Dict:
        topic = self._topic(user_id, topic_id)
        parsed = parsers.parse_text(content)
        parsed = {'cards': parsed['cards'], 'errors': parsed['errors'], 'source': 'text'}
        return self._import(user_id, topic, parsed, None, check_duplicates, merge_strategy, dry_run)

    def _import(self, user_id: int, topic: models.Topic, parsed: Dict, filename: Optional[str],
                check_duplicates: bool, merge_strategy: Optional[Dict], dry_run: bool) -> Dict:
        cards = parsed['cards']
        source = parsed['source']
        if len(cards) > parsers.MAX_IMPORT_SIZE:
            raise ValueError(f"Import size exceeds maximum limit of {parsers.MAX_IMPORT_SIZE} cards")
        valid, row_errors = self._split_valid(cards)
        errors = parsed['errors'] + row_errors
        failed = len(errors)

        to_create = valid
        to_update = []
        skipped = 0
        if check_duplicates and valid:
            detected = duplicates.detect_duplicates(valid, self._existing(topic.unit_id))
            if detected['duplicate_count'] and merge_strategy is None:
                return {
                    'status': 'duplicates_found',
                    'source': source,
                    'duplicates': detected['duplicates'],
                    'duplicate_count': detected['duplicate_count'],
                    'unique_count': detected['unique_count'],
                    'errors': errors,
                }
            to_create = list(detected['unique_cards'])
            for dup in detected['duplicates']:
                action = duplicates.action_for(dup, merge_strategy or {})
                if action == 'keep_both':
                    to_create.append(dup['import_card'])
                elif action in ('update', 'replace') and dup['duplicate_type'] == 'existing':
                    to_update.append((action, dup['existing_card']['id'], dup['import_card']))
                else:
                    skipped += 1

        if dry_run:
            return {
                'status': 'dry_run',
                'source': source,
                'would_import': len(to_create),
                'would_update': len(to_update),
                'skipped': skipped,
                'failed': failed,
                'errors': errors,
            }

        created = [
            models.Flashcard(topic_id=topic.id, unit_id=topic.unit_id, import_source=source, **_card_values(card))
            for card in to_create
        ]
        self.flashcard_repo.add_all(created)
        for action, card_id, incoming in to_update:
            self._merge_into(card_id, action, incoming, source)
        self.session.commit()

        if not created and not to_update and failed:
            status = 'failed'
        elif failed:
            status = 'partial'
        else:
            status = 'completed'
        history = models.FlashcardImport(
            user_id=user_id,
            unit_id=topic.unit_id,
            topic_id=topic.id,
            source=source,
            filename=filename,
            total_cards=len(cards) + len(parsed['errors']),
            imported_cards=len(created),
            failed_cards=failed,
            errors=errors,
            status=status,
        )
        self.import_repo.save(history)
        _event(import_logger, 'flashcard_import', user_id=user_id, topic_id=topic.id, source=source,
               imported=len(created), updated=len(to_update), skipped=skipped, failed=failed, status=status)
        return {
            'status': status,
            'import_id': history.id,
            'source': source,
            'imported': len(created),
            'updated': len(to_update),
            'skipped': skipped,
            'failed': failed,
            'errors': errors,
        }

    def _merge_into(self, card_id: int, action: str, incoming: Dict, source: str) -> None:
        card = self.flashcard_repo.get(card_id)
        if card is None:
            return
        values = _card_values(incoming)
        if action == 'update':
            card.question = values['question']
            card.answer = values['answer']
            card.hint = values['hint'] or card.hint
            card.difficulty_level = values['difficulty_level']
            card.tags = list(dict.fromkeys(list(card.tags or []) + values['tags']))
        else:
            for name, value in values.items():
                setattr(card, name, value)
        card.import_source = source
        card.updated_at = _now()
        self.session.add(card)

    def history(self, user_id: int, limit: int = 20) -> List[Dict]:
        return [
            {
                'id': h.id,
                'unit_id': h.unit_id,
                'topic_id': h.topic_id,
                'source': h.source,
                'filename': h.filename,
                'total_cards': h.total_cards,
                'imported_cards': h.imported_cards,
                'failed_cards': h.failed_cards,
                'errors': list(h.errors or []),
                'status': h.status,
                'created_at': h.created_at.isoformat(),
            }
            for h in self.import_repo.list_for_user(user_id, limit)
        ]


class ExportService:
    """Export a unit's (or a subset of its) flashcards."""
    def __init__(self, session: Session):
        self.session = session
        self.flashcard_repo = repositories.FlashcardRepository(session)
        self.unit_repo = repositories.UnitRepository(session)

    def export_unit(self, user_id: int, unit_id: int, fmt: str, flashcard_ids: Optional[List[int]] = None,
                    include_inactive: bool = False, include_metadata: bool = True,
                    deck_name: Optional[str] = None) -> Dict:
        unit = self.unit_repo.get_for_user(unit_id, user_id)
        if unit is None:
            raise NotFoundError('unit not found')
        if fmt not in exporters.EXPORT_FORMATS:
            raise ValueError('Invalid export format specified')
        cards = self.flashcard_repo.list_for_unit(unit.id, include_inactive=include_inactive)
        if flashcard_ids:
            wanted = set(flashcard_ids)
            cards = [c for c in cards if c.id in wanted]
        options = {
            'basename': f"{unit.name}-flashcards",
            'deck_name': deck_name or unit.name,
            'include_metadata': include_metadata,
            'unit': {'id': unit.id, 'name': unit.name, 'description': unit.description},
        }
        out = exporters.export_flashcards([card_dict(c) for c in cards], fmt, options)
        _event(logger, 'flashcard_export', user_id=user_id, unit_id=unit.id, format=fmt, cards=len(cards))
        return out


class ContentService:
    """Rich topic content: rendering, conversion and embedded images."""
    def __init__(self, session: Session):
        self.session = session
        self.topic_repo = repositories.TopicRepository(session)

    def _topic(self, user_id: int, topic_id: int) -> models.Topic:
        topic = self.topic_repo.get_for_user(topic_id, user_id)
        if topic is None:
            raise NotFoundError('topic not found')
        return topic

    def render(self, user_id: int, topic_id: int) -> Dict:
        topic = self._topic(user_id, topic_id)
        rendered = rich_content.process_rich_content(topic.content or '', topic.content_format)
        rendered['topic_id'] = topic.id
        rendered['images'] = rich_content.extract_embedded_images(topic.content or '', topic.content_format)
        return rendered

    def update(self, user_id: int, topic_id: int, content: str, content_format: str) -> Dict:
        if content_format not in rich_content.CONTENT_FORMATS:
            raise ValueError('content_format must be plain, markdown or html')
        topic = self._topic(user_id, topic_id)
        topic.content = content
        topic.content_format = content_format
        self.topic_repo.save(topic)
        return self.render(user_id, topic_id)

    def upload_image(self, user_id: int, topic_id: int, filename: str, mime: str, payload: bytes,
                     alt_text: Optional[str] = None) -> Dict:
        topic = self._topic(user_id, topic_id)
        image = rich_content.store_content_image(settings.MEDIA_ROOT, topic.id, filename, mime, payload, alt_text)
        _event(logger, 'content_image_uploaded', user_id=user_id, topic_id=topic.id,
               filename=image['filename'], size=image['size'])
        return image


def client_info(user_agent: Optional[str], ip_address: Optional[str], token_id: Optional[str]) -> Dict:
    """Request details kids mode binds its state to."""
    return {'user_agent': user_agent, 'ip_address': ip_address, 'token_id': token_id}


class KidsModeService:
    """PIN management, entering and leaving kids mode, and the audit trail."""
    def __init__(self, session: Session, limiter: InMemoryRateLimiter = pin_rate_limiter):
        self.session = session
        self.limiter = limiter
        self.prefs_repo = repositories.PreferencesRepository(session)
        self.user_repo = repositories.UserRepository(session)
        self.child_repo = repositories.ChildRepository(session)
        self.audit_repo = repositories.AuditRepository(session)

    def audit(self, user_id: int, action: str, client: Dict, child_id: Optional[int] = None, **metadata) -> None:
        entry = models.KidsModeAuditLog(
            user_id=user_id,
            child_id=child_id,
            action=action,
            ip_address=client.get('ip_address'),
            user_agent=client.get('user_agent'),
            metadata_json=metadata,
        )
        self.audit_repo.save(entry)

    def audit_log(self, user_id: int, limit: int = 50) -> List[Dict]:
        return [
            {
                'id': e.id,
                'action': e.action,
                'child_id': e.child_id,
                'ip_address': e.ip_address,
                'user_agent': e.user_agent,
                'metadata': dict(e.metadata_json or {}),
                'created_at': e.created_at.isoformat(),
            }
            for e in self.audit_repo.list_for_user(user_id, limit)
        ]

    def preferences(self, user_id: int) -> models.UserPreferences:
        return self.prefs_repo.get_or_create(user_id)

    def active_state(self, user_id: int) -> Optional[models.UserPreferences]:
        """The user's preferences when kids mode is on, else `None`."""
        prefs = self.prefs_repo.get_for_user(user_id)
        if prefs is None or not prefs.kids_mode_active:
            return None
        return prefs

    @staticmethod
    def is_locked(prefs: models.UserPreferences, now: Optional[datetime] = None) -> bool:
        locked_until = policy.as_utc(prefs.kids_mode_pin_locked_until)
        return bool(locked_until and locked_until > (now or _now()))

    def pin_status(self, user_id: int) -> Dict:
        prefs = self.preferences(user_id)
        locked_until = policy.as_utc(prefs.kids_mode_pin_locked_until)
        return {
            'has_pin': bool(prefs.kids_mode_pin),
            'is_locked': self.is_locked(prefs),
            'locked_until': locked_until.isoformat() if self.is_locked(prefs) else None,
            'attempts_remaining': policy.remaining_attempts(prefs.kids_mode_pin_attempts),
            'kids_mode_active': prefs.kids_mode_active,
        }

    def set_pin(self, user: models.User, pin: str, confirmation: str, client: Dict) -> None:
        if not policy.PIN_PATTERN.match(pin or ''):
            raise ValueError('PIN must be exactly 4 digits')
        if pin != confirmation:
            raise ValueError('PIN confirmation does not match')
        prefs = self.preferences(user.id)
        prefs.kids_mode_pin = PWD_CTX.hash(pin)
        prefs.kids_mode_pin_attempts = 0
        prefs.kids_mode_pin_locked_until = None
        prefs.updated_at = _now()
        self.prefs_repo.save(prefs)
        self.audit(user.id, 'pin_set', client)
        _event(kids_logger, 'kids_mode_pin_updated', user_id=user.id, ip_address=client.get('ip_address'))

    def reset_pin(self, user: models.User, client: Dict) -> None:
        prefs = self.preferences(user.id)
        prefs.kids_mode_pin = None
        prefs.kids_mode_pin_attempts = 0
        prefs.kids_mode_pin_locked_until = None
        prefs.updated_at = _now()
        self.prefs_repo.save(prefs)
        self.audit(user.id, 'pin_reset', client)
        _event(kids_logger, 'kids_mode_pin_reset', user_id=user.id, ip_address=client.get('ip_address'))

    def enter(self, user: models.User, child_id: int, client: Dict) -> Dict:
        child = self.child_repo.get_for_user(child_id, user.id)
        if child is None:
            raise NotFoundError('Child not found')
        fingerprint = policy.session_fingerprint(client.get('user_agent'), client.get('ip_address'), client.get('token_id'))
        prefs = self.preferences(user.id)
        prefs.kids_mode_active = True
        prefs.kids_mode_child_id = child.id
        prefs.kids_mode_entered_at = _now()
        prefs.kids_mode_fingerprint = fingerprint
        prefs.updated_at = _now()
        self.prefs_repo.save(prefs)
        self.audit(user.id, 'enter', client, child_id=child.id, child_name=child.name, fingerprint=fingerprint[:8] + '...')
        _event(kids_logger, 'kids_mode_entered', user_id=user.id, child_id=child.id, ip_address=client.get('ip_address'))
        return {
            'message': f"Kids mode activated for {child.name}",
            'child_id': child.id,
            'child_name': child.name,
            'redirect': child_today_url(child.id),
        }

    def status(self, user_id: int) -> Dict:
        prefs = self.preferences(user_id)
        entered_at = policy.as_utc(prefs.kids_mode_entered_at)
        return {
            'kids_mode_active': prefs.kids_mode_active,
            'child_id': prefs.kids_mode_child_id if prefs.kids_mode_active else None,
            'entered_at': entered_at.isoformat() if prefs.kids_mode_active and entered_at else None,
            'has_pin': bool(prefs.kids_mode_pin),
        }

    def _clear(self, prefs: models.UserPreferences) -> None:
        prefs.kids_mode_active = False
        prefs.kids_mode_child_id = None
        prefs.kids_mode_entered_at = None
        prefs.kids_mode_fingerprint = None
        prefs.updated_at = _now()

    def exit(self, user: models.User, pin: str, client: Dict) -> Dict:
        """Leave kids mode with the parent's PIN.

        Checks run in order: active state, PIN format, session fingerprint,
        PIN presence, stored lockout, per-address and per-user throttles and
        finally the PIN itself.
        """
        prefs = self.preferences(user.id)
        if not prefs.kids_mode_active:
            raise KidsModeError(400, {'error': 'Kids mode is not active'})
        if not policy.PIN_PATTERN.match(pin or ''):
            raise KidsModeError(422, {'error': 'PIN must be exactly 4 digits'})
        child_id = prefs.kids_mode_child_id
        ip = client.get('ip_address') or 'unknown'

        current = policy.session_fingerprint(client.get('user_agent'), client.get('ip_address'), client.get('token_id'))
        if not policy.fingerprints_match(prefs.kids_mode_fingerprint, current):
            self.audit(user.id, 'fingerprint_mismatch', client, child_id=child_id,
                       expected=(prefs.kids_mode_fingerprint or '')[:8] + '...', received=current[:8] + '...')
            self._clear(prefs)
            self.prefs_repo.save(prefs)
            self.user_repo.bump_token_version(user)
            _event(kids_logger, 'kids_mode_fingerprint_mismatch', logging.WARNING, user_id=user.id, ip_address=ip)
            raise KidsModeError(403, {'error': 'Security violation detected. Please login again.'})

        if not prefs.kids_mode_pin:
            raise KidsModeError(400, {'error': 'PIN is not set up. Please set up a PIN first.'})

        if self.is_locked(prefs):
            locked_until = policy.as_utc(prefs.kids_mode_pin_locked_until)
            raise KidsModeError(429, {
                'error': f"Too many failed attempts. Try again after {locked_until:%H:%M}",
                'locked_until': locked_until.isoformat(),
            })

        window = settings.KIDS_MODE_RATE_WINDOW_SECONDS
        ip_key = f"kids-mode-ip-attempts:{ip}"
        user_key = f"kids-mode-pin-attempts:{user.id}"
        if self.limiter.too_many_attempts(ip_key, settings.KIDS_MODE_IP_MAX_ATTEMPTS, window):
            retry_after = self.limiter.available_in(ip_key, window)
            minutes = -(-retry_after // 60)
            raise KidsModeError(429, {
                'error': f"Too many attempts from this location. Please wait {minutes} minutes.",
                'retry_after': retry_after,
            }, headers={'Retry-After': str(retry_after)})
        if self.limiter.too_many_attempts(user_key, settings.KIDS_MODE_USER_MAX_ATTEMPTS, window):
            retry_after = self.limiter.available_in(user_key, window)
            raise KidsModeError(429, {
                'error': 'Too many attempts. Please wait before trying again.',
                'retry_after': retry_after,
            }, headers={'Retry-After': str(retry_after)})

        if not PWD_CTX.verify(pin, prefs.kids_mode_pin):
            prefs.kids_mode_pin_attempts += 1
            attempts = prefs.kids_mode_pin_attempts
            lockout = None
            if attempts >= policy.MAX_PIN_ATTEMPTS:
                lockout = policy.lockout_minutes(attempts)
                prefs.kids_mode_pin_locked_until = _now() + timedelta(minutes=lockout)
            prefs.updated_at = _now()
            self.prefs_repo.save(prefs)
            self.limiter.hit(ip_key, window)
            self.limiter.hit(user_key, window)
            remaining = policy.remaining_attempts(attempts)
            self.audit(user.id, 'pin_failed', client, child_id=child_id, attempts=attempts, remaining=remaining)
            if lockout is not None:
                self.audit(user.id, 'pin_locked', client, child_id=child_id, lockout_minutes=lockout)
            _event(kids_logger, 'kids_mode_pin_failed', logging.WARNING, user_id=user.id, child_id=child_id,
                   attempts=attempts, ip_address=ip)
            detail = {
                'error': f"Incorrect PIN. {remaining} attempts remaining.",
                'attempts_remaining': remaining,
                'locked': lockout is not None,
            }
            if lockout is not None:
                detail['lockout_minutes'] = lockout
            raise KidsModeError(400, detail)

        entered_at = policy.as_utc(prefs.kids_mode_entered_at)
        duration = int((_now() - entered_at).total_seconds() // 60) if entered_at else None
        prefs.kids_mode_pin_attempts = 0
        prefs.kids_mode_pin_locked_until = None
        self._clear(prefs)
        self.prefs_repo.save(prefs)
        self.limiter.clear(ip_key)
        self.limiter.clear(user_key)
        self.audit(user.id, 'exit', client, child_id=child_id, duration_minutes=duration)
        _event(kids_logger, 'kids_mode_exited', user_id=user.id, child_id=child_id, duration_minutes=duration)
        return {'message': 'Kids mode deactivated successfully', 'redirect': '/children'}

    def record_blocked(self, user_id: int, prefs: models.UserPreferences, path: str,
                       route_name: Optional[str], method: str, client: Dict) -> Dict:
        """Audit a refused request and return the 403 body."""
        redirect = child_today_url(prefs.kids_mode_child_id)
        self.audit(user_id, 'blocked_route', client, child_id=prefs.kids_mode_child_id,
                   path=path, route_name=route_name, method=method)
        _event(kids_logger, 'kids_mode_blocked_route', logging.WARNING, user_id=user_id,
               child_id=prefs.kids_mode_child_id, path=path, route_name=route_name, method=method)
        return {'error': 'Access denied in kids mode', 'redirect': redirect}


def child_today_url(child_id: Optional[int]) -> str:
    return f"/children/{child_id}/today"
