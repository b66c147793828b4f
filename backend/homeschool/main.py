"""FastAPI application entrypoint and HTTP controllers.

This module defines the HTTP endpoints of the homeschool planner.
Controllers are intentionally thin: they accept requests, delegate to
services, and return JSON responses. Every route has a name; the kids
mode policy in `utils/kids_mode.py` decides by name (and path) what a
child may reach.

Endpoint groups:
- /auth (register, login) and /health
- /children (+ today view, sessions, review queue and stats)
- /subjects, /units, /topics (curriculum, unit progress, rich content)
- /sessions (planning, scheduling, completion)
- /reviews (show, process)
- /topics/{id}/flashcards, /flashcards, /units/{id}/flashcards (cards,
  import, export)
- /content (preview, conversion, video links)
- /kids-mode (PIN, enter/exit, status, audit)
"""

from fastapi import FastAPI, Depends, UploadFile, File, HTTPException, Form, Request
from fastapi.responses import JSONResponse, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from sqlmodel import Session
from typing import Optional
import json
import logging
import os
import time
import uuid

from .database import create_db_and_tables, get_session
from . import services, repositories, models, schemas
from .auth import enforce_kids_mode, get_current_user, request_client
from .config import settings
from .utils import card_types, exporters, rich_content
from .utils import kids_mode as policy

app = FastAPI(title="Homeschool Planner API", dependencies=[Depends(enforce_kids_mode)])
logger = logging.getLogger("homeschool.api")
if not logger.handlers:
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))

if settings.ALLOW_DEV_CORS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

class MediaFiles(StaticFiles):
    async def get_response(self, path: str, scope):
        response = await super().get_response(path, scope)
        if path.lower().endswith(".svg"):
            response.headers.update(rich_content.SVG_RESPONSE_HEADERS)
        return response


# uploaded topic images are served from here
settings.MEDIA_ROOT.mkdir(parents=True, exist_ok=True)
app.mount("/media", MediaFiles(directory=settings.MEDIA_ROOT), name="media")

create_db_and_tables()


@app.middleware("http")
async def kids_mode_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    if getattr(request.state, "kids_mode_active", False):
        headers = policy.security_headers(
            is_https=request.url.scheme == "https",
            route_name=getattr(request.state, "kids_mode_route", None),
        )
        for name, value in headers.items():
            response.headers[name] = value
    return response


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    request.state.request_id = req_id
    started = time.perf_counter()
    response: Response
    try:
        response = await call_next(request)
    except Exception:
        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
        logger.exception(
            "request_failed %s",
            json.dumps(
                {
                    "request_id": req_id,
                    "path": request.url.path,
                    "method": request.method,
                    "duration_ms": elapsed_ms,
                    "client": request.client.host if request.client else "unknown",
                },
                ensure_ascii=True,
            ),
        )
        raise
    response.headers["X-Request-ID"] = req_id
    elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
    logger.info(
        "request_done %s",
        json.dumps(
            {
                "request_id": req_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": response.status_code,
                "duration_ms": elapsed_ms,
                "client": request.client.host if request.client else "unknown",
            },
            ensure_ascii=True,
        ),
    )
    return response


@app.exception_handler(services.NotFoundError)
async def not_found_handler(request: Request, exc: services.NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(services.KidsModeError)
async def kids_mode_error_handler(request: Request, exc: services.KidsModeError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=exc.headers)


def _bad_request(e: ValueError) -> HTTPException:
    return HTTPException(status_code=400, detail=str(e))


def _read_upload(file: UploadFile, limit: int) -> bytes:
    if not file.filename:
        raise HTTPException(status_code=400, detail='no file')
    if "/" in file.filename or "\\" in file.filename or len(file.filename) > 200:
        raise HTTPException(status_code=400, detail='invalid filename')
    content = file.file.read(limit + 1)
    if len(content) > limit:
        raise HTTPException(status_code=400, detail='file too large')
    return content


# -- auth --------------------------------------------------------------------

@app.post('/auth/register', name='auth.register')
def register(payload: schemas.RegisterIn, db: Session = Depends(get_session)):
    """Register a new user (idempotent).

    Returns the existing user if the username is already taken so the
    operation can be repeated by scripts and tests.
    """
    existing = repositories.UserRepository(db).get_by_username(payload.username)
    if existing:
        return {'id': existing.id, 'username': existing.username}
    user = services.AuthService(db).register(payload.username, payload.password)
    return {'id': user.id, 'username': user.username}


@app.post('/auth/login', name='auth.login', response_model=schemas.TokenOut)
def login(payload: schemas.RegisterIn, db: Session = Depends(get_session)):
    """Authenticate a user and return a JWT token.

    The token carries `user_id`, `username`, a unique `jti` and the
    user's token version `tv`.
    """
    token = services.AuthService(db).authenticate(payload.username, payload.password)
    if not token:
        raise HTTPException(status_code=401, detail='invalid credentials')
    return {'access_token': token}


@app.get("/health", name='health')
def health():
    """Lightweight health check for uptime monitoring."""
    return {"status": "ok"}


# -- children ----------------------------------------------------------------

@app.get('/children', name='children.index')
def list_children(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return [services.child_out(c) for c in services.ChildService(db).list(user.id)]


@app.post('/children', name='children.store', status_code=201)
def create_child(payload: schemas.ChildIn, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    try:
        child = services.ChildService(db).create(user.id, payload.model_dump())
    except ValueError as e:
        raise _bad_request(e)
    return services.child_out(child)


@app.get('/children/{child_id}', name='children.show')
def get_child(child_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return services.child_out(services.ChildService(db).get(user.id, child_id))


@app.put('/children/{child_id}', name='children.update')
def update_child(child_id: int, payload: schemas.ChildUpdate, db: Session = Depends(get_session),
                 user: models.User = Depends(get_current_user)):
    try:
        child = services.ChildService(db).update(user.id, child_id, payload.model_dump(exclude_unset=True))
    except ValueError as e:
        raise _bad_request(e)
    return services.child_out(child)


@app.put('/children/{child_id}/independence-level', name='children.independence-level')
def set_independence_level(child_id: int, payload: schemas.IndependenceLevelIn, db: Session = Depends(get_session),
                           user: models.User = Depends(get_current_user)):
    try:
        child = services.ChildService(db).set_independence_level(user.id, child_id, payload.independence_level)
    except ValueError as e:
        raise _bad_request(e)
    return services.child_out(child)


@app.delete('/children/{child_id}', name='children.destroy')
def delete_child(child_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    services.ChildService(db).delete(user.id, child_id)
    return {'status': 'ok'}


@app.get('/children/{child_id}/today', name='dashboard.child-today')
def child_today(child_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """The child's view of today: scheduled sessions and review counts."""
    return services.ChildService(db).today(user.id, child_id)


@app.get('/children/{child_id}/sessions', name='sessions.index')
def list_sessions(child_id: int, status: Optional[str] = None, db: Session = Depends(get_session),
                  user: models.User = Depends(get_current_user)):
    try:
        rows = services.LearningSessionService(db).list_for_child(user.id, child_id, status)
    except ValueError as e:
        raise _bad_request(e)
    return [services.session_out(s) for s in rows]


@app.get('/children/{child_id}/reviews', name='reviews.index')
def review_queue(child_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Interleaved review queue (due reviews with new ones mixed in)."""
    queue = services.ReviewService(db).queue_for_child(user.id, child_id)
    return {'child_id': child_id, 'total': len(queue), 'reviews': queue}


@app.get('/children/{child_id}/reviews/session', name='reviews.session')
def review_session(child_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """The review to work on now, or `session_complete` when none is left."""
    queue = services.ReviewService(db).queue_for_child(user.id, child_id)
    return {
        'current': queue[0] if queue else None,
        'remaining': len(queue),
        'session_complete': not queue,
    }


@app.get('/children/{child_id}/reviews/stats', name='reviews.stats')
def review_stats(child_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return services.ReviewService(db).stats(user.id, child_id)


@app.post('/children/{child_id}/topics/{topic_id}/flashcards/enrol', name='reviews.enrol')
def enrol_flashcards(child_id: int, topic_id: int, db: Session = Depends(get_session),
                     user: models.User = Depends(get_current_user)):
    """Start reviewing every active flashcard of a topic."""
    return services.ReviewService(db).enrol_flashcards(user.id, child_id, topic_id)


# -- subjects / units / topics -----------------------------------------------

@app.get('/subjects', name='subjects.index')
def list_subjects(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return [services.subject_out(s) for s in services.CurriculumService(db).list_subjects(user.id)]


@app.get('/subjects/colors', name='subjects.colors')
def subject_colors():
    return services.CurriculumService.color_options()


@app.post('/subjects', name='subjects.store', status_code=201)
def create_subject(payload: schemas.SubjectIn, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    try:
        subject = services.CurriculumService(db).create_subject(user.id, payload.name, payload.color)
    except ValueError as e:
        raise _bad_request(e)
    return services.subject_out(subject)


@app.get('/subjects/{subject_id}', name='subjects.show')
def get_subject(subject_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return services.subject_out(services.CurriculumService(db).get_subject(user.id, subject_id))


@app.put('/subjects/{subject_id}', name='subjects.update')
def update_subject(subject_id: int, payload: schemas.SubjectUpdate, db: Session = Depends(get_session),
                   user: models.User = Depends(get_current_user)):
    try:
        subject = services.CurriculumService(db).update_subject(user.id, subject_id, payload.model_dump(exclude_unset=True))
    except ValueError as e:
        raise _bad_request(e)
    return services.subject_out(subject)


@app.delete('/subjects/{subject_id}', name='subjects.destroy')
def delete_subject(subject_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    services.CurriculumService(db).delete_subject(user.id, subject_id)
    return {'status': 'ok'}


@app.get('/subjects/{subject_id}/units', name='units.index')
def list_units(subject_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return [services.unit_out(u) for u in services.CurriculumService(db).list_units(user.id, subject_id)]


@app.post('/subjects/{subject_id}/units', name='units.store', status_code=201)
def create_unit(subject_id: int, payload: schemas.UnitIn, db: Session = Depends(get_session),
                user: models.User = Depends(get_current_user)):
    unit = services.CurriculumService(db).create_unit(user.id, subject_id, payload.model_dump())
    return services.unit_out(unit)


@app.get('/units/{unit_id}', name='units.show')
def get_unit(unit_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return services.unit_out(services.CurriculumService(db).get_unit(user.id, unit_id))


@app.put('/units/{unit_id}', name='units.update')
def update_unit(unit_id: int, payload: schemas.UnitUpdate, db: Session = Depends(get_session),
                user: models.User = Depends(get_current_user)):
    unit = services.CurriculumService(db).update_unit(user.id, unit_id, payload.model_dump(exclude_unset=True))
    return services.unit_out(unit)


@app.delete('/units/{unit_id}', name='units.destroy')
def delete_unit(unit_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    services.CurriculumService(db).delete_unit(user.id, unit_id)
    return {'status': 'ok'}


@app.get('/units/{unit_id}/progress', name='units.progress')
def unit_progress(unit_id: int, child_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Completion of the unit's required topics for one child."""
    return services.CurriculumService(db).unit_progress(user.id, unit_id, child_id)


@app.get('/units/{unit_id}/topics', name='topics.index')
def list_topics(unit_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return [services.topic_out(t) for t in services.CurriculumService(db).list_topics(user.id, unit_id)]


@app.post('/units/{unit_id}/topics', name='topics.store', status_code=201)
def create_topic(unit_id: int, payload: schemas.TopicIn, db: Session = Depends(get_session),
                 user: models.User = Depends(get_current_user)):
    try:
        topic = services.CurriculumService(db).create_topic(user.id, unit_id, payload.model_dump())
    except ValueError as e:
        raise _bad_request(e)
    return services.topic_out(topic)


@app.get('/topics/{topic_id}', name='topics.show')
def get_topic(topic_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return services.topic_out(services.CurriculumService(db).get_topic(user.id, topic_id))


@app.put('/topics/{topic_id}', name='topics.update')
def update_topic(topic_id: int, payload: schemas.TopicUpdate, db: Session = Depends(get_session),
                 user: models.User = Depends(get_current_user)):
    try:
        topic = services.CurriculumService(db).update_topic(user.id, topic_id, payload.model_dump(exclude_unset=True))
    except ValueError as e:
        raise _bad_request(e)
    return services.topic_out(topic)


@app.delete('/topics/{topic_id}', name='topics.destroy')
def delete_topic(topic_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Delete a topic with its cards, sessions, reviews and uploaded images."""
    services.CurriculumService(db).delete_topic(user.id, topic_id)
    return {'status': 'ok'}


@app.get('/topics/{topic_id}/content', name='topics.content')
def topic_content(topic_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Rendered, sanitized HTML of the topic content plus its metadata."""
    return services.ContentService(db).render(user.id, topic_id)


@app.put('/topics/{topic_id}/content', name='topics.content.update')
def update_topic_content(topic_id: int, payload: schemas.TopicContentIn, db: Session = Depends(get_session),
                         user: models.User = Depends(get_current_user)):
    try:
        return services.ContentService(db).update(user.id, topic_id, payload.content, payload.content_format)
    except ValueError as e:
        raise _bad_request(e)


@app.post('/topics/{topic_id}/images', name='topics.images.store', status_code=201)
def upload_topic_image(
    topic_id: int,
    file: UploadFile = File(...),
    alt_text: Optional[str] = Form(default=None),
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
):
    """Store an image for the topic content and return its markdown snippet."""
    payload = _read_upload(file, rich_content.MAX_IMAGE_BYTES)
    try:
        return services.ContentService(db).upload_image(
            user.id, topic_id, file.filename, file.content_type or '', payload, alt_text
        )
    except ValueError as e:
        raise _bad_request(e)


# -- sessions ----------------------------------------------------------------

@app.post('/sessions', name='sessions.store', status_code=201)
def create_session(payload: schemas.SessionIn, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    try:
        s = services.LearningSessionService(db).create(user.id, payload.model_dump())
    except ValueError as e:
        raise _bad_request(e)
    return services.session_out(s)


@app.get('/sessions/{session_id}', name='sessions.show')
def get_learning_session(session_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return services.session_out(services.LearningSessionService(db).get(user.id, session_id))


@app.put('/sessions/{session_id}', name='sessions.update')
def update_session(session_id: int, payload: schemas.SessionUpdate, db: Session = Depends(get_session),
                   user: models.User = Depends(get_current_user)):
    """Change status, commitment or notes; moving to `done` creates the review."""
    try:
        s = services.LearningSessionService(db).update(user.id, session_id, payload.model_dump(exclude_unset=True))
    except ValueError as e:
        raise _bad_request(e)
    return services.session_out(s)


@app.put('/sessions/{session_id}/schedule', name='sessions.schedule')
def schedule_session(session_id: int, payload: schemas.ScheduleIn, db: Session = Depends(get_session),
                     user: models.User = Depends(get_current_user)):
    try:
        s = services.LearningSessionService(db).schedule(user.id, session_id, payload.model_dump())
    except ValueError as e:
        raise _bad_request(e)
    return services.session_out(s)


@app.delete('/sessions/{session_id}/schedule', name='sessions.unschedule')
def unschedule_session(session_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return services.session_out(services.LearningSessionService(db).unschedule(user.id, session_id))


@app.post('/sessions/{session_id}/complete', name='dashboard.sessions.complete')
def complete_session(session_id: int, payload: Optional[schemas.CompleteSessionIn] = None,
                     db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Mark a session done (allowed from the child's view)."""
    notes = payload.evidence_notes if payload else None
    s = services.LearningSessionService(db).complete(user.id, session_id, notes)
    return services.session_out(s)


@app.delete('/sessions/{session_id}', name='sessions.destroy')
def delete_learning_session(session_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    services.LearningSessionService(db).delete(user.id, session_id)
    return {'status': 'ok'}


# -- reviews -----------------------------------------------------------------

@app.get('/reviews/{review_id}', name='reviews.show')
def get_review(review_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    svc = services.ReviewService(db)
    return svc.describe(svc.get(user.id, review_id))


@app.post('/reviews/{review_id}/process', name='reviews.process')
def process_review(review_id: int, payload: schemas.ReviewResultIn, db: Session = Depends(get_session),
                   user: models.User = Depends(get_current_user)):
    """Apply a rating and return the schedule change plus the next review."""
    try:
        return services.ReviewService(db).process(user.id, review_id, payload.model_dump())
    except ValueError as e:
        raise _bad_request(e)


# -- flashcards --------------------------------------------------------------

@app.get('/flashcards/card-types', name='flashcards.card-types')
def flashcard_card_types():
    return {
        'card_types': card_types.card_type_options(),
        'difficulty_levels': dict(card_types.DIFFICULTY_LEVELS),
        'export_formats': dict(exporters.EXPORT_FORMATS),
    }


@app.get('/topics/{topic_id}/flashcards', name='flashcards.index')
def list_flashcards(topic_id: int, include_inactive: bool = False, card_type: Optional[str] = None,
                    difficulty: Optional[str] = None, db: Session = Depends(get_session),
                    user: models.User = Depends(get_current_user)):
    cards = services.FlashcardService(db).list_for_topic(user.id, topic_id, include_inactive, card_type, difficulty)
    return [services.card_out(c) for c in cards]


@app.get('/units/{unit_id}/flashcards', name='flashcards.unit-index')
def list_unit_flashcards(unit_id: int, include_inactive: bool = False, card_type: Optional[str] = None,
                         difficulty: Optional[str] = None, db: Session = Depends(get_session),
                         user: models.User = Depends(get_current_user)):
    cards = services.FlashcardService(db).list_for_unit(user.id, unit_id, include_inactive, card_type, difficulty)
    return [services.card_out(c) for c in cards]


@app.post('/topics/{topic_id}/flashcards', name='flashcards.store', status_code=201)
def create_flashcard(topic_id: int, payload: schemas.FlashcardIn, db: Session = Depends(get_session),
                     user: models.User = Depends(get_current_user)):
    try:
        card = services.FlashcardService(db).create(user.id, topic_id, payload.model_dump())
    except ValueError as e:
        raise _bad_request(e)
    return services.card_out(card)


@app.post('/topics/{topic_id}/flashcards/bulk-status', name='flashcards.bulk-status')
def bulk_flashcard_status(topic_id: int, payload: schemas.BulkStatusIn, db: Session = Depends(get_session),
                          user: models.User = Depends(get_current_user)):
    changed = services.FlashcardService(db).bulk_status(user.id, topic_id, payload.flashcard_ids, payload.is_active)
    return {'updated': changed}


@app.get('/flashcards/{flashcard_id}', name='flashcards.show')
def get_flashcard(flashcard_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return services.card_out(services.FlashcardService(db).get(user.id, flashcard_id))


@app.put('/flashcards/{flashcard_id}', name='flashcards.update')
def update_flashcard(flashcard_id: int, payload: schemas.FlashcardUpdate, db: Session = Depends(get_session),
                     user: models.User = Depends(get_current_user)):
    try:
        card = services.FlashcardService(db).update(user.id, flashcard_id, payload.model_dump(exclude_unset=True))
    except ValueError as e:
        raise _bad_request(e)
    return services.card_out(card)


@app.delete('/flashcards/{flashcard_id}', name='flashcards.destroy')
def delete_flashcard(flashcard_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Soft delete: the card is deactivated and can be restored."""
    card = services.FlashcardService(db).set_active(user.id, flashcard_id, False)
    return services.card_out(card)


@app.post('/flashcards/{flashcard_id}/restore', name='flashcards.restore')
def restore_flashcard(flashcard_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    card = services.FlashcardService(db).set_active(user.id, flashcard_id, True)
    return services.card_out(card)


def _merge_strategy(raw: Optional[str]):
    if not raw:
        return None
    try:
        strategy = schemas.MergeStrategyIn.model_validate_json(raw)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f'invalid merge_strategy: {e}')
    return strategy.model_dump()


@app.post('/topics/{topic_id}/flashcards/import', name='flashcards.import')
def import_flashcards(
    topic_id: int,
    file: UploadFile = File(...),
    check_duplicates: bool = Form(default=True),
    merge_strategy: Optional[str] = Form(default=None),
    dry_run: bool = Form(default=False),
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
):
    """Upload a flashcard file (csv, tsv, txt, json, apkg, mem, xml, docx, pdf).

    `merge_strategy` is a JSON object with `global_action` or per-index
    `actions`; without it, detected duplicates are returned and nothing
    is written.
    """
    content = _read_upload(file, settings.MAX_UPLOAD_BYTES)
    strategy = _merge_strategy(merge_strategy)
    try:
        return services.ImportService(db).import_file(
            user.id, topic_id, content, file.filename, check_duplicates, strategy, dry_run
        )
    except ValueError as e:
        raise _bad_request(e)


@app.post('/topics/{topic_id}/flashcards/import/preview', name='flashcards.import.preview')
def preview_flashcard_import(topic_id: int, file: UploadFile = File(...), db: Session = Depends(get_session),
                             user: models.User = Depends(get_current_user)):
    content = _read_upload(file, settings.MAX_UPLOAD_BYTES)
    try:
        return services.ImportService(db).preview(user.id, topic_id, content, file.filename)
    except ValueError as e:
        raise _bad_request(e)


@app.post('/topics/{topic_id}/flashcards/import/text/preview', name='flashcards.import.text.preview')
def preview_flashcard_text(topic_id: int, payload: schemas.ContentPreviewIn, db: Session = Depends(get_session),
                           user: models.User = Depends(get_current_user)):
    return services.ImportService(db).preview_text(user.id, topic_id, payload.content)


@app.post('/topics/{topic_id}/flashcards/import/text', name='flashcards.import.text')
def import_flashcard_text(topic_id: int, payload: schemas.TextImportIn, db: Session = Depends(get_session),
                          user: models.User = Depends(get_current_user)):
    strategy = payload.merge_strategy.model_dump() if payload.merge_strategy else None
    try:
        return services.ImportService(db).import_text(user.id, topic_id, payload.content, payload.check_duplicates, strategy)
    except ValueError as e:
        raise _bad_request(e)


@app.get('/imports', name='flashcards.import.history')
def import_history(limit: int = 20, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return services.ImportService(db).history(user.id, limit)


@app.post('/units/{unit_id}/flashcards/export', name='flashcards.export')
def export_flashcards(unit_id: int, payload: schemas.ExportOptionsIn, db: Session = Depends(get_session),
                      user: models.User = Depends(get_current_user)):
    """Download the unit's flashcards in one of the export formats."""
    try:
        out = services.ExportService(db).export_unit(
            user.id, unit_id, payload.format, payload.flashcard_ids,
            payload.include_inactive, payload.include_metadata, payload.deck_name,
        )
    except ValueError as e:
        raise _bad_request(e)
    return Response(
        content=out['content'],
        media_type=out['mime_type'],
        headers={'Content-Disposition': f'attachment; filename="{out["filename"]}"'},
    )


# -- content -----------------------------------------------------------------

@app.post('/content/preview', name='content.preview')
def content_preview(payload: schemas.ContentPreviewIn, user: models.User = Depends(get_current_user)):
    return rich_content.process_rich_content(payload.content, payload.content_format)


@app.post('/content/convert', name='content.convert')
def content_convert(payload: schemas.ContentConvertIn, user: models.User = Depends(get_current_user)):
    try:
        converted = rich_content.convert_content_format(payload.content, payload.from_format, payload.to_format)
    except ValueError as e:
        raise _bad_request(e)
    return {'content': converted, 'format': payload.to_format}


@app.post('/content/video-info', name='content.video-info')
def content_video_info(payload: schemas.VideoUrlIn, user: models.User = Depends(get_current_user)):
    return rich_content.validate_video_url(payload.url)


# -- kids mode ---------------------------------------------------------------

@app.get('/kids-mode/status', name='kids-mode.status')
def kids_mode_status(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return services.KidsModeService(db).status(user.id)


@app.get('/kids-mode/settings', name='kids-mode.settings')
def kids_mode_settings(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """PIN state for the parent's settings screen."""
    return services.KidsModeService(db).pin_status(user.id)


@app.put('/kids-mode/pin', name='kids-mode.pin.update')
def kids_mode_set_pin(payload: schemas.PinSetIn, request: Request, db: Session = Depends(get_session),
                      user: models.User = Depends(get_current_user)):
    try:
        services.KidsModeService(db).set_pin(user, payload.pin, payload.pin_confirmation, request_client(request))
    except ValueError as e:
        raise _bad_request(e)
    return {'message': 'Kids mode PIN has been set successfully'}


@app.delete('/kids-mode/pin', name='kids-mode.pin.reset')
def kids_mode_reset_pin(request: Request, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    services.KidsModeService(db).reset_pin(user, request_client(request))
    return {'message': 'Kids mode PIN has been reset successfully'}


@app.post('/kids-mode/enter/{child_id}', name='kids-mode.enter')
def kids_mode_enter(child_id: int, request: Request, db: Session = Depends(get_session),
                    user: models.User = Depends(get_current_user)):
    """Switch this login into kids mode for one child."""
    return services.KidsModeService(db).enter(user, child_id, request_client(request))


@app.post('/kids-mode/exit', name='kids-mode.exit')
def kids_mode_exit(payload: schemas.PinExitIn, request: Request, db: Session = Depends(get_session),
                   user: models.User = Depends(get_current_user)):
    """Leave kids mode with the parent's PIN (throttled and audited)."""
    return services.KidsModeService(db).exit(user, payload.pin, request_client(request))


@app.get('/kids-mode/audit', name='kids-mode.audit')
def kids_mode_audit(limit: int = 50, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return services.KidsModeService(db).audit_log(user.id, limit)
