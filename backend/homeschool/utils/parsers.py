"""File parsing utilities that convert supported import formats into a
normalized flashcard list.

Supported inputs: delimited text (CSV, TSV, TXT with tab, comma, " - ",
pipe or semicolon separators), JSON, Mnemosyne (.mem/.xml), Anki
packages (.apkg), DOCX and PDF. Every parser returns card dictionaries
with the keys used by `utils.card_types` (card_type, question, answer,
hint, choices, correct_choices, difficulty_level, tags, ...).
"""

import csv
import io
import json
import os
import re
import sqlite3
import tempfile
import zipfile
import xml.etree.ElementTree as ET
from typing import Dict, List, Optional

import docx
import pdfplumber

from . import card_types
from .html_sanitizer import strip_tags

MAX_IMPORT_SIZE = 500
MAX_TAG_LENGTH = 50
SUPPORTED_EXTENSIONS = ('csv', 'tsv', 'txt', 'json', 'apkg', 'mem', 'xml', 'docx', 'pdf')

DELIMITERS = (
    ('tab', '\t'),
    ('comma', ','),
    ('dash', ' - '),
    ('pipe', '|'),
    ('semicolon', ';'),
)
HASHTAG_PATTERN = re.compile(r'#(\w+)')


def extension_of(filename: str) -> str:
    return os.path.splitext(filename or '')[1].lower().lstrip('.')


def _source_for(ext: str) -> str:
    return {
        'apkg': 'anki',
        'mem': 'mnemosyne',
        'xml': 'mnemosyne',
        'txt': 'text',
    }.get(ext, ext)


def parse_file_to_cards(file_bytes: bytes, filename: str) -> Dict:
    """Dispatch to the appropriate parser based on file extension.

    Returns `{'cards', 'errors', 'source'}`. Raises ValueError when the
    file cannot be parsed at all.
    """
    ext = extension_of(filename)
    if ext not in SUPPORTED_EXTENSIONS:
        raise ValueError(f"Unsupported file type. Supported: {', '.join(SUPPORTED_EXTENSIONS)}")
    if not file_bytes:
        raise ValueError('File is empty or could not be read')
    source = _source_for(ext)
    if ext == 'json':
        cards, errors = parse_json(file_bytes), []
    elif ext == 'apkg':
        cards, errors = parse_anki_package(file_bytes), []
    elif ext in ('mem', 'xml'):
        cards, errors = parse_mnemosyne(_decode(file_bytes)), []
    elif ext == 'docx':
        parsed = parse_text(parse_docx_text(file_bytes))
        cards, errors = parsed['cards'], parsed['errors']
    elif ext == 'pdf':
        parsed = parse_text(parse_pdf_text(file_bytes))
        cards, errors = parsed['cards'], parsed['errors']
    else:
        parsed = parse_text(_decode(file_bytes))
        cards, errors = parsed['cards'], parsed['errors']
    if len(cards) > MAX_IMPORT_SIZE:
        raise ValueError(f"Import contains {len(cards)} cards, but maximum allowed is {MAX_IMPORT_SIZE}")
    return {'cards': cards, 'errors': errors, 'source': source}


def _decode(b: bytes) -> str:
    try:
        return b.decode('utf-8-sig')
    except UnicodeDecodeError:
        return b.decode('latin-1')


def split_line(line: str, delimiter: str) -> List[str]:
    if delimiter == ',':
        # quoted fields may contain commas
        return next(csv.reader([line]), [])
    return line.split(delimiter)


def detect_delimiter(lines: List[str]) -> Optional[str]:
    """Score each delimiter over the first five lines.

    A line split into two parts scores 3, three parts 2 and more parts 1;
    the highest average wins, earlier delimiters winning ties.
    """
    sample = lines[:5]
    best, best_score = None, 0.0
    for _, delimiter in DELIMITERS:
        score = 0
        valid = 0
        for line in sample:
            parts = split_line(line, delimiter)
            if len(parts) >= 2:
                valid += 1
                score += 3 if len(parts) == 2 else 2 if len(parts) == 3 else 1
        if valid and score / len(sample) > best_score:
            best, best_score = delimiter, score / len(sample)
    return best


def parse_line(line: str, delimiter: str, line_number: int) -> Dict:
    """Parse one delimited line; raises ValueError with the line number."""
    parts = split_line(line, delimiter)
    if len(parts) < 2:
        raise ValueError(f"Line {line_number}: Must contain at least question and answer separated by delimiter")
    question = parts[0].strip()
    answer = parts[1].strip()
    hint = parts[2].strip() if len(parts) > 2 else None
    tags = list(dict.fromkeys(HASHTAG_PATTERN.findall(line)))
    card_type = None
    choices = None
    correct = None
    # extended format: Type, Question, Answer, Choices, Correct, Hint, Tags
    if len(parts) >= 5 and parts[0].strip().lower() in card_types.CARD_TYPES:
        card_type = parts[0].strip().lower()
        question = parts[1].strip()
        answer = parts[2].strip()
        if parts[3].strip():
            choices = [c.strip() for c in parts[3].strip().split(';')]
        if parts[4].strip():
            correct = card_types.coerce_int_list(parts[4].strip().split(';'))
        hint = parts[5].strip() if len(parts) > 5 else None
        if len(parts) > 6 and parts[6].strip():
            tags = [t.strip() for t in parts[6].strip().split(';')]
    if not question:
        raise ValueError(f"Line {line_number}: Question cannot be empty")
    if not answer:
        raise ValueError(f"Line {line_number}: Answer cannot be empty")
    return {
        'card_type': card_type,
        'question': question,
        'answer': answer,
        'hint': hint or None,
        'choices': choices,
        'correct_choices': correct,
        'difficulty_level': 'medium',
        'tags': tags,
    }


def parse_text(content: str) -> Dict:
    """Parse delimited text (Quizlet style exports, CSV, TSV).

    Returns `{'cards', 'errors', 'delimiter', 'total_lines'}` where
    `errors` lists the lines that were skipped.
    """
    content = (content or '').replace('\r\n', '\n').replace('\r', '\n')
    numbered = [(i + 1, line) for i, line in enumerate(content.split('\n')) if line.strip()]
    if not numbered:
        raise ValueError('No content lines found')
    delimiter = detect_delimiter([line for _, line in numbered])
    if delimiter is None:
        raise ValueError('Could not detect delimiter. Supported formats: tab-separated, comma-separated, or " - " separated')
    cards = []
    errors = []
    for line_number, line in numbered:
        try:
            card = parse_line(line, delimiter, line_number)
        except ValueError as e:
            errors.append(str(e))
            continue
        cards.append(card_types.normalize_card(card))
    if not cards:
        message = 'No valid flashcards could be parsed.'
        if errors:
            message += ' Errors: ' + '; '.join(errors)
        raise ValueError(message)
    if len(cards) > MAX_IMPORT_SIZE:
        raise ValueError(f"Import contains {len(cards)} cards, but maximum allowed is {MAX_IMPORT_SIZE}")
    return {'cards': cards, 'errors': errors, 'delimiter': delimiter, 'total_lines': len(numbered)}


def parse_json(b: bytes) -> List[Dict]:
    """Parse a JSON list of cards or a JSON export document."""
    try:
        data = json.loads(_decode(b))
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON: {e.msg}")
    if isinstance(data, dict):
        data = data.get('flashcards')
    if not isinstance(data, list):
        raise ValueError('JSON import must be a list of cards or contain a "flashcards" list')
    out = []
    for item in data:
        if isinstance(item, dict):
            out.append(normalize_card_item(item))
    if not out:
        raise ValueError('No valid flashcards found in import data')
    return out


def normalize_card_item(item: dict) -> dict:
    """Map alternative keys of an imported card object to the canonical shape."""
    card = {
        'card_type': item.get('card_type') or item.get('type'),
        'question': str(item.get('question') or item.get('front') or ''),
        'answer': str(item.get('answer') or item.get('back') or ''),
        'hint': item.get('hint'),
        'choices': item.get('choices'),
        'correct_choices': card_types.coerce_int_list(item.get('correct_choices')) or None,
        'cloze_text': item.get('cloze_text'),
        'cloze_answers': item.get('cloze_answers'),
        'question_image_url': item.get('question_image_url'),
        'answer_image_url': item.get('answer_image_url'),
        'occlusion_data': item.get('occlusion_data'),
        'difficulty_level': item.get('difficulty_level') or 'medium',
        'tags': item.get('tags') or [],
    }
    return card_types.normalize_card(card)


# -- Mnemosyne -------------------------------------------------------------

_MNEMOSYNE_REGEXES = (
    re.compile(
        r'<(?:card|item|flashcard)[^>]*>.*?<(?:question|q|front)>(.*?)</(?:question|q|front)>'
        r'.*?<(?:answer|a|back)>(.*?)</(?:answer|a|back)>.*?</(?:card|item|flashcard)>',
        re.IGNORECASE | re.DOTALL,
    ),
    re.compile(r'<Q>(.*?)</Q>\s*<A>(.*?)</A>', re.IGNORECASE | re.DOTALL),
    re.compile(r'<question>(.*?)</question>\s*<answer>(.*?)</answer>', re.IGNORECASE | re.DOTALL),
)
_SPLIT_PATTERNS = (
    re.compile(r'(.+?)\s*[?:]\s*(.+)'),
    re.compile(r'(.+?)\s*->\s*(.+)'),
    re.compile(r'(.+?)\s*=\s*(.+)'),
)
_MNEMOSYNE_TEXT_DELIMITERS = ('\t', ' | ', ' - ', ';', '|')
_BARE_AMPERSAND = re.compile(r'&(?!(?:[a-zA-Z]+|#\d+|#x[0-9a-fA-F]+);)')


def clean_text(text: str) -> str:
    text = strip_tags(text)
    return re.sub(r'\s+', ' ', text).strip()


def convert_difficulty(value: Optional[str]) -> str:
    """Map Mnemosyne's 0-5 grade to easy/medium/hard."""
    try:
        level = int(float(str(value).strip()))
    except (TypeError, ValueError, OverflowError):
        return 'medium'
    if level <= 1:
        return 'easy'
    if level >= 4:
        return 'hard'
    return 'medium'


def split_question_answer(text: str) -> Optional[tuple]:
    for pattern in _SPLIT_PATTERNS:
        m = pattern.match(text)
        if m:
            question, answer = m.group(1).strip(), m.group(2).strip()
            if len(question) > 3 and len(answer) > 3:
                return question, answer
    return None


def _xml_value(el, names) -> str:
    for name in names:
        child = el.find(name)
        if child is not None:
            return ''.join(child.itertext())
        if name in el.attrib:
            return el.attrib[name]
    return ''


def _mnemosyne_card(question: str, answer: str, **extra) -> Dict:
    card = {
        'card_type': card_types.BASIC,
        'question': clean_text(question),
        'answer': clean_text(answer),
        'hint': None,
        'difficulty_level': 'medium',
        'tags': [],
        'import_source': 'mnemosyne',
    }
    card.update(extra)
    return card


def _parse_xml_card(el) -> Optional[Dict]:
    question = _xml_value(el, ('question', 'q', 'front', 'Q'))
    answer = _xml_value(el, ('answer', 'a', 'back', 'A'))
    if not question.strip() or not answer.strip():
        return None
    category = _xml_value(el, ('category', 'cat', 'tag', 'deck')).strip()
    difficulty = _xml_value(el, ('difficulty', 'level', 'grade'))
    hint = _xml_value(el, ('hint', 'note', 'comment'))
    return _mnemosyne_card(
        question,
        answer,
        difficulty_level=convert_difficulty(difficulty),
        tags=[category] if category else [],
        hint=clean_text(hint) or None,
    )


def _parse_xml_item(el) -> Optional[Dict]:
    question = _xml_value(el, ('text', 'question', 'front'))
    answer = _xml_value(el, ('answer', 'back', 'solution'))
    if not answer.strip() and question.strip():
        split = split_question_answer(question)
        if split:
            question, answer = split
    if not question.strip() or not answer.strip():
        return None
    return _mnemosyne_card(question, answer)


def _parse_mnemosyne_xml(content: str) -> List[Dict]:
    content = content.lstrip('\ufeff')
    content = _BARE_AMPERSAND.sub('&amp;', content)
    content = re.sub(r'<br\s*/?>', '\n', content, flags=re.IGNORECASE)
    try:
        root = ET.fromstring(content.encode('utf-8'))
    except ET.ParseError:
        return _parse_mnemosyne_regex(content)
    if root.findall('card'):
        cards = [_parse_xml_card(el) for el in root.findall('card')]
    elif root.findall('item'):
        cards = [_parse_xml_item(el) for el in root.findall('item')]
    else:
        cards = [_parse_xml_card(el) for el in root.iter() if el.tag in ('card', 'item', 'flashcard')]
    return [c for c in cards if c]


def _parse_mnemosyne_regex(content: str) -> List[Dict]:
    for pattern in _MNEMOSYNE_REGEXES:
        cards = []
        for q, a in pattern.findall(content):
            if clean_text(q) and clean_text(a):
                cards.append(_mnemosyne_card(q, a))
        if cards:
            return cards
    return []


def _parse_mnemosyne_text(content: str) -> List[Dict]:
    cards = []
    for line in content.replace('\r\n', '\n').split('\n'):
        line = line.strip()
        if not line or line.startswith('#'):
            continue
        for delimiter in _MNEMOSYNE_TEXT_DELIMITERS:
            if delimiter in line:
                question, answer = (p.strip() for p in line.split(delimiter, 1))
                if question and answer:
                    cards.append(_mnemosyne_card(question, answer))
                    break
    return cards


def is_xml_content(content: str) -> bool:
    stripped = content.strip().lstrip('\ufeff')
    return stripped.startswith('<?xml') or '<mnemosyne' in stripped or '<cards' in stripped


def parse_mnemosyne(content: str) -> List[Dict]:
    """Parse a Mnemosyne XML or legacy text export."""
    if is_xml_content(content):
        cards = _parse_mnemosyne_xml(content)
    else:
        cards = _parse_mnemosyne_text(content)
    if not cards:
        raise ValueError('No valid flashcards found in the file')
    return cards


# -- Anki ------------------------------------------------------------------

ANKI_CLOZE_FIELD = re.compile(r'\{\{c\d+::[^}]+\}\}')
ANKI_CLOZE_CAPTURE = re.compile(r'\{\{c\d+::([^}]+)\}\}')
IMG_SRC_PATTERN = re.compile(r'<img[^>]+src="([^"]+)"', re.IGNORECASE)


def render_anki_template(template: str, fields: Dict[str, str]) -> str:
    """Substitute `{{Field}}` references and drop remaining mustache tags."""
    out = template
    for name, value in fields.items():
        if not name:
            continue
        keep = bool(value.strip())
        quoted = re.escape(name)
        section = re.compile(r'\{\{#' + quoted + r'\}\}(.*?)\{\{/' + quoted + r'\}\}', re.DOTALL)
        inverted = re.compile(r'\{\{\^' + quoted + r'\}\}(.*?)\{\{/' + quoted + r'\}\}', re.DOTALL)
        out = section.sub(lambda m: m.group(1) if keep else '', out)
        out = inverted.sub(lambda m: '' if keep else m.group(1), out)
        out = out.replace('{{' + name + '}}', value if keep else '')
    out = re.sub(r'\{\{[^}]*\}\}', '', out)
    return out.strip()


def _anki_card_type(note_type: Dict, template: Dict, fields: Dict[str, str]) -> str:
    if note_type.get('type') == 1:
        return card_types.CLOZE
    if 'image occlusion' in (note_type.get('name') or '').lower():
        return card_types.IMAGE_OCCLUSION
    for name in fields:
        lower = name.lower()
        if 'choice' in lower or 'option' in lower:
            return card_types.MULTIPLE_CHOICE
    everything = ' '.join([template.get('qfmt', ''), template.get('afmt', '')] + list(fields.values()))
    if ANKI_CLOZE_FIELD.search(everything):
        return card_types.CLOZE
    return card_types.BASIC


def _anki_note_to_card(note_type: Dict, template: Dict, values: List[str], tags: List[str]) -> Optional[Dict]:
    fields = {name: (values[i] if i < len(values) else '') for i, name in enumerate(note_type['fields'])}
    card_type = _anki_card_type(note_type, template, fields)
    question = strip_tags(render_anki_template(template.get('qfmt', ''), fields)).strip()
    # answer templates usually repeat the front side
    answer_html = render_anki_template(template.get('afmt', '').replace('{{FrontSide}}', ''), fields)
    answer = strip_tags(answer_html).strip()
    if not question or not answer:
        return None
    card = {
        'card_type': card_type,
        'question': question,
        'answer': answer,
        'hint': None,
        'difficulty_level': 'medium',
        'tags': [t for t in tags if t],
        'import_source': 'anki',
    }
    if card_type == card_types.CLOZE:
        text = next((v for v in fields.values() if ANKI_CLOZE_FIELD.search(v)), question)
        cloze_answers = list(dict.fromkeys(ANKI_CLOZE_CAPTURE.findall(text)))
        cloze_text = strip_tags(ANKI_CLOZE_CAPTURE.sub(r'{{\1}}', text))
        card.update({
            'cloze_text': cloze_text,
            'cloze_answers': cloze_answers,
            'question': card_types.CLOZE_PATTERN.sub('[...]', cloze_text),
            'answer': ', '.join(cloze_answers),
        })
    elif card_type == card_types.MULTIPLE_CHOICE:
        choices = [strip_tags(v).strip() for n, v in fields.items()
                   if ('choice' in n.lower() or 'option' in n.lower()) and v.strip()]
        if not choices and ';' in answer:
            choices = [c.strip() for c in answer.split(';')]
        if choices:
            card['choices'] = choices[:card_types.MAX_CHOICES]
            card['correct_choices'] = [0]
    elif card_type == card_types.IMAGE_OCCLUSION:
        for value in fields.values():
            m = IMG_SRC_PATTERN.search(value)
            if m and card_types.is_url(m.group(1)):
                card['question_image_url'] = m.group(1)
                break
        card['occlusion_data'] = card_types.default_occlusion(answer)
    return card


def parse_anki_package(b: bytes) -> List[Dict]:
    """Read notes and cards from an Anki `.apkg` (zipped SQLite collection)."""
    try:
        archive = zipfile.ZipFile(io.BytesIO(b))
    except zipfile.BadZipFile:
        raise ValueError('Invalid Anki package: not a zip archive')
    with archive:
        names = archive.namelist()
        db_name = next((n for n in ('collection.anki21', 'collection.anki2') if n in names), None)
        if db_name is None:
            raise ValueError('Invalid Anki package: collection database not found')
        payload = archive.read(db_name)
    with tempfile.TemporaryDirectory() as tmp:
        db_path = os.path.join(tmp, 'collection.anki2')
        with open(db_path, 'wb') as fh:
            fh.write(payload)
        conn = sqlite3.connect(db_path)
        try:
            cards = _read_anki_collection(conn)
        except sqlite3.DatabaseError as e:
            raise ValueError(f"Failed to parse Anki database: {e}")
        finally:
            conn.close()
    if not cards:
        raise ValueError('No valid flashcards found in the Anki package')
    return cards


def _read_anki_collection(conn) -> List[Dict]:
    row = conn.execute('SELECT models FROM col LIMIT 1').fetchone()
    if not row or not row[0]:
        return []
    note_types = {}
    for model_id, model in json.loads(row[0]).items():
        field_names = [f.get('name') for f in model.get('flds', [])]
        # a model with an unnamed field cannot be mapped onto note values
        if not field_names or not all(field_names):
            continue
        note_types[str(model_id)] = {
            'name': model.get('name', ''),
            'type': model.get('type', 0),
            'fields': field_names,
            'templates': [
                {'name': t.get('name', ''), 'qfmt': t.get('qfmt', ''), 'afmt': t.get('afmt', '')}
                for t in model.get('tmpls', [])
            ],
        }
    rows = conn.execute(
        'SELECT n.mid, n.flds, n.tags, c.ord FROM notes n '
        'JOIN cards c ON n.id = c.nid ORDER BY n.id, c.ord'
    ).fetchall()
    cards = []
    for mid, flds, tags, ord_ in rows:
        note_type = note_types.get(str(mid))
        if not note_type or not note_type['templates']:
            continue
        templates = note_type['templates']
        template = templates[ord_] if 0 <= ord_ < len(templates) else templates[0]
        card = _anki_note_to_card(note_type, template, flds.split('\x1f'), (tags or '').strip().split(' '))
        if card:
            cards.append(card)
    return cards


# -- DOCX / PDF ------------------------------------------------------------

def parse_docx_text(b: bytes) -> str:
    """Return the non-empty paragraphs of a DOCX document, one per line."""
    doc = docx.Document(io.BytesIO(b))
    lines = []
    for p in doc.paragraphs:
        text = (p.text or '').strip()
        if text:
            lines.append(text)
    for table in doc.tables:
        for row in table.rows:
            cells = [c.text.strip() for c in row.cells]
            if any(cells):
                lines.append('\t'.join(cells))
    return '\n'.join(lines)


def parse_pdf_text(b: bytes) -> str:
    """Extract the text of every PDF page."""
    text_parts = []
    with pdfplumber.open(io.BytesIO(b)) as pdf:
        for page in pdf.pages:
            text_parts.append(page.extract_text() or '')
    return '\n'.join(text_parts)


def card_problems(card: Dict) -> List[str]:
    """Problems with one imported card; empty when it can be saved."""
    problems = []
    if not str(card.get('question') or '').strip():
        problems.append('Question is required')
    if not str(card.get('answer') or '').strip():
        problems.append('Answer is required')
    if card.get('difficulty_level') not in (None, *card_types.DIFFICULTY_LEVELS):
        problems.append('Difficulty level must be easy, medium, or hard')
    tags = card.get('tags')
    if tags is not None and not isinstance(tags, list):
        problems.append('Tags must be an array')
    elif tags and any(len(str(t)) > MAX_TAG_LENGTH for t in tags):
        problems.append(f"Each tag must be no more than {MAX_TAG_LENGTH} characters")
    return problems
