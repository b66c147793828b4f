"""Flashcard exporters.

Each exporter takes card dictionaries (see `FlashcardService.card_dict`)
and returns `{'content', 'filename', 'mime_type'}` where `content` is
bytes ready to be sent as an attachment.
"""

import csv
import hashlib
import io
import json
import os
import re
import sqlite3
import tempfile
import time
import zipfile
from datetime import date, datetime, timezone
from typing import Dict, List, Optional

from . import card_types

MAX_EXPORT_SIZE = 5000

EXPORT_FORMATS = {
    'anki': 'Anki Package (.apkg)',
    'quizlet': 'Quizlet TSV (.tsv)',
    'csv': 'Extended CSV (.csv)',
    'json': 'JSON Export (.json)',
    'mnemosyne': 'Mnemosyne XML (.xml)',
    'supermemo': 'SuperMemo Q&A (.txt)',
}

CSV_HEADER = [
    'ID', 'Card Type', 'Question', 'Answer', 'Hint', 'Choices', 'Correct Choices',
    'Cloze Text', 'Cloze Answers', 'Question Image URL', 'Answer Image URL',
    'Occlusion Data', 'Difficulty Level', 'Tags', 'Created At', 'Updated At',
]


def generate_filename(basename: str, extension: str, today: Optional[date] = None) -> str:
    """`<slug>-YYYY-MM-DD.<ext>` with anything but letters, digits, `-` and `_` dashed."""
    slug = re.sub(r'[^A-Za-z0-9\-_]', '-', basename or '')
    slug = re.sub(r'-+', '-', slug).strip('-')
    if not slug:
        slug = 'flashcards-export'
    return f"{slug}-{(today or date.today()).isoformat()}.{extension}"


def _iso(value) -> str:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    return value or ''


def _joined(values) -> str:
    return ';'.join(str(v) for v in values) if isinstance(values, list) else ''


def export_flashcards(cards: List[Dict], fmt: str, options: Optional[Dict] = None) -> Dict:
    """Export `cards` in format `fmt`; raises ValueError for bad input."""
    options = options or {}
    if not cards:
        raise ValueError('No flashcards provided for export')
    if len(cards) > MAX_EXPORT_SIZE:
        raise ValueError(f"Export size exceeds maximum limit of {MAX_EXPORT_SIZE} cards")
    exporter = _EXPORTERS.get(fmt)
    if exporter is None:
        raise ValueError('Invalid export format specified')
    return exporter(cards, options)


def export_quizlet(cards: List[Dict], options: Dict) -> Dict:
    lines = []
    for card in cards:
        question = card_types.question_text(card)
        answer = card_types.answer_text(card)
        question = question.replace('\r', '').replace('\t', ' ').replace('\n', ' ')
        answer = answer.replace('\r', '').replace('\t', ' ').replace('\n', ' ')
        lines.append(f"{question}\t{answer}")
    return {
        'content': '\n'.join(lines).strip().encode('utf-8'),
        'filename': generate_filename(options.get('basename', 'quizlet-export'), 'tsv'),
        'mime_type': 'text/tab-separated-values',
    }


def export_csv(cards: List[Dict], options: Dict) -> Dict:
    sio = io.StringIO()
    writer = csv.writer(sio)
    writer.writerow(CSV_HEADER)
    for card in cards:
        occlusion = card.get('occlusion_data')
        writer.writerow([
            card.get('id'),
            card.get('card_type'),
            card.get('question'),
            card.get('answer'),
            card.get('hint') or '',
            _joined(card.get('choices')),
            _joined(card.get('correct_choices')),
            card.get('cloze_text') or '',
            _joined(card.get('cloze_answers')),
            card.get('question_image_url') or '',
            card.get('answer_image_url') or '',
            json.dumps(occlusion) if isinstance(occlusion, list) else '',
            card.get('difficulty_level'),
            _joined(card.get('tags')),
            _iso(card.get('created_at')),
            _iso(card.get('updated_at')),
        ])
    return {
        'content': sio.getvalue().encode('utf-8'),
        'filename': generate_filename(options.get('basename', 'extended-export'), 'csv'),
        'mime_type': 'text/csv',
    }


def export_json(cards: List[Dict], options: Dict) -> Dict:
    include_metadata = options.get('include_metadata', True)
    data = {
        'exported_at': datetime.now(timezone.utc).isoformat(),
        'format_version': '1.0',
        'total_cards': len(cards),
        'flashcards': [],
    }
    if include_metadata and options.get('unit'):
        data['unit'] = options['unit']
    for card in cards:
        card_type = card.get('card_type')
        item = {
            'id': card.get('id'),
            'card_type': card_type,
            'question': card.get('question'),
            'answer': card.get('answer'),
            'difficulty_level': card.get('difficulty_level'),
            'tags': card.get('tags') or [],
        }
        if card.get('hint'):
            item['hint'] = card['hint']
        if card_types.requires_multiple_choice_data(card_type):
            item['choices'] = card.get('choices') or []
            item['correct_choices'] = card.get('correct_choices') or []
        if card_types.requires_cloze_data(card_type):
            item['cloze_text'] = card.get('cloze_text')
            item['cloze_answers'] = card.get('cloze_answers') or []
        if card_types.requires_image_data(card_type):
            item['question_image_url'] = card.get('question_image_url')
            item['answer_image_url'] = card.get('answer_image_url')
            item['occlusion_data'] = card.get('occlusion_data') or []
        if include_metadata:
            item['created_at'] = _iso(card.get('created_at')) or None
            item['updated_at'] = _iso(card.get('updated_at')) or None
        data['flashcards'].append(item)
    return {
        'content': json.dumps(data, indent=4, ensure_ascii=False).encode('utf-8'),
        'filename': generate_filename(options.get('basename', 'backup-export'), 'json'),
        'mime_type': 'application/json',
    }


def _cdata(text: str) -> str:
    # a literal "]]>" has to be split across two CDATA sections
    return '<![CDATA[' + (text or '').replace(']]>', ']]]]><![CDATA[>') + ']]>'


def _xml_text(text: str) -> str:
    return (str(text).replace('&', '&amp;').replace('<', '&lt;').replace('>', '&gt;'))


def export_mnemosyne(cards: List[Dict], options: Dict) -> Dict:
    out = ['<?xml version="1.0" encoding="UTF-8"?>', '<mnemosyne core_version="1" database_version="1">']
    for card in cards:
        out.append('  <card>')
        out.append(f"    <id>{_xml_text(card.get('id') or '')}</id>")
        out.append(f"    <Q>{_cdata(card_types.question_text(card))}</Q>")
        out.append(f"    <A>{_cdata(card_types.answer_text(card))}</A>")
        if card.get('tags'):
            out.append(f"    <tags>{_xml_text(', '.join(card['tags']))}</tags>")
        out.append('    <grade>0</grade>')
        out.append('    <easiness>2.5</easiness>')
        out.append('    <acq_reps>0</acq_reps>')
        out.append('  </card>')
    out.append('</mnemosyne>')
    return {
        'content': ('\n'.join(out) + '\n').encode('utf-8'),
        'filename': generate_filename(options.get('basename', 'mnemosyne-export'), 'xml'),
        'mime_type': 'application/xml',
    }


def export_supermemo(cards: List[Dict], options: Dict) -> Dict:
    blocks = []
    for card in cards:
        blocks.append(f"Q: {card_types.question_text(card)}\nA: {card_types.answer_text(card)}\n")
    return {
        'content': '\n'.join(blocks).encode('utf-8'),
        'filename': generate_filename(options.get('basename', 'supermemo-export'), 'txt'),
        'mime_type': 'text/plain',
    }


ANKI_DECK_ID = 1
ANKI_MODEL_ID = 1

_ANKI_SCHEMA = """
CREATE TABLE col (
    id INTEGER PRIMARY KEY, crt INTEGER NOT NULL, mod INTEGER NOT NULL,
    scm INTEGER NOT NULL, ver INTEGER NOT NULL, dty INTEGER NOT NULL,
    usn INTEGER NOT NULL, ls INTEGER NOT NULL, conf TEXT NOT NULL,
    models TEXT NOT NULL, decks TEXT NOT NULL, dconf TEXT NOT NULL,
    tags TEXT NOT NULL
);
CREATE TABLE notes (
    id INTEGER PRIMARY KEY, guid TEXT NOT NULL, mid INTEGER NOT NULL,
    mod INTEGER NOT NULL, usn INTEGER NOT NULL, tags TEXT NOT NULL,
    flds TEXT NOT NULL, sfld TEXT NOT NULL, csum INTEGER NOT NULL,
    flags INTEGER NOT NULL, data TEXT NOT NULL
);
CREATE TABLE cards (
    id INTEGER PRIMARY KEY, nid INTEGER NOT NULL, did INTEGER NOT NULL,
    ord INTEGER NOT NULL, mod INTEGER NOT NULL, usn INTEGER NOT NULL,
    type INTEGER NOT NULL, queue INTEGER NOT NULL, due INTEGER NOT NULL,
    ivl INTEGER NOT NULL, factor INTEGER NOT NULL, reps INTEGER NOT NULL,
    lapses INTEGER NOT NULL, left INTEGER NOT NULL, odue INTEGER NOT NULL,
    odid INTEGER NOT NULL, flags INTEGER NOT NULL, data TEXT NOT NULL
);
"""


def _anki_collection_json(deck_name: str, ts: int) -> tuple:
    conf = {
        'nextPos': 1, 'estTimes': True, 'activeDecks': [ANKI_DECK_ID], 'sortType': 'noteFld',
        'timeLim': 0, 'sortBackwards': False, 'addToCur': True, 'curDeck': ANKI_DECK_ID,
        'newBury': True, 'newSpread': 0, 'dueCounts': True, 'curModel': ANKI_MODEL_ID,
        'collapseTime': 1200,
    }
    models = {
        str(ANKI_MODEL_ID): {
            'id': ANKI_MODEL_ID, 'name': 'Basic', 'type': 0, 'mod': ts, 'usn': 0,
            'sortf': 0, 'did': ANKI_DECK_ID,
            'tmpls': [{
                'name': 'Card 1', 'ord': 0, 'qfmt': '{{Front}}',
                'afmt': '{{FrontSide}}<hr id="answer">{{Back}}',
                'did': None, 'bqfmt': '', 'bafmt': '',
            }],
            'flds': [
                {'name': 'Front', 'ord': 0, 'sticky': False, 'rtl': False, 'font': 'Arial', 'size': 20},
                {'name': 'Back', 'ord': 1, 'sticky': False, 'rtl': False, 'font': 'Arial', 'size': 20},
            ],
            'css': '.card { font-family: arial; font-size: 20px; text-align: center; color: black; background-color: white; }',
        }
    }
    decks = {
        str(ANKI_DECK_ID): {
            'id': ANKI_DECK_ID, 'name': deck_name, 'extendRev': 50, 'usn': 0,
            'collapsed': False, 'newToday': [0, 0], 'revToday': [0, 0],
            'lrnToday': [0, 0], 'timeToday': [0, 0], 'mod': ts, 'desc': '', 'dyn': 0,
        }
    }
    return json.dumps(conf), json.dumps(models), json.dumps(decks)


def _write_anki_database(db_path: str, deck_name: str, cards: List[Dict]) -> None:
    ts = int(time.time())
    conf, models, decks = _anki_collection_json(deck_name, ts)
    conn = sqlite3.connect(db_path)
    try:
        conn.executescript(_ANKI_SCHEMA)
        conn.execute(
            'INSERT INTO col (id, crt, mod, scm, ver, dty, usn, ls, conf, models, decks, dconf, tags) '
            'VALUES (1, ?, ?, ?, 11, 0, 0, ?, ?, ?, ?, ?, ?)',
            (ts, ts, ts, ts, conf, models, decks, '{}', '{}'),
        )
        for index, card in enumerate(cards, start=1):
            question = card_types.question_text(card)
            answer = card_types.answer_text(card)
            tags = card.get('tags') or []
            tag_field = (' ' + ' '.join(tags) + ' ') if tags else ''
            guid = hashlib.md5(f"{question}{answer}{ts}".encode('utf-8')).hexdigest()[:11]
            conn.execute(
                'INSERT INTO notes (id, guid, mid, mod, usn, tags, flds, sfld, csum, flags, data) '
                "VALUES (?, ?, ?, ?, 0, ?, ?, ?, 0, 0, '')",
                (index, guid, ANKI_MODEL_ID, ts, tag_field, question + '\x1f' + answer, question),
            )
            conn.execute(
                'INSERT INTO cards (id, nid, did, ord, mod, usn, type, queue, due, ivl, factor, '
                'reps, lapses, left, odue, odid, flags, data) '
                "VALUES (?, ?, ?, 0, ?, 0, 0, 0, ?, 0, 2500, 0, 0, 0, 0, 0, 0, '')",
                (index, index, ANKI_DECK_ID, ts, index),
            )
        conn.commit()
    finally:
        conn.close()


def export_anki(cards: List[Dict], options: Dict) -> Dict:
    deck_name = options.get('deck_name') or 'Exported Flashcards'
    with tempfile.TemporaryDirectory() as tmp:
        db_path = os.path.join(tmp, 'collection.anki2')
        _write_anki_database(db_path, deck_name, cards)
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, 'w', zipfile.ZIP_DEFLATED) as zf:
            zf.write(db_path, 'collection.anki2')
            zf.writestr('media', '{}')
    return {
        'content': buf.getvalue(),
        'filename': generate_filename(deck_name, 'apkg'),
        'mime_type': 'application/zip',
    }


_EXPORTERS = {
    'anki': export_anki,
    'quizlet': export_quizlet,
    'csv': export_csv,
    'json': export_json,
    'mnemosyne': export_mnemosyne,
    'supermemo': export_supermemo,
}
