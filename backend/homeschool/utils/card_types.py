"""Flashcard card types: validation, type detection and normalisation.

Card data flows through these helpers as plain dictionaries with the
same keys as `models.Flashcard` (question, answer, choices,
correct_choices, cloze_text, ...). Importers, the flashcard service and
the exporters all share them so every entry point applies the same
rules.
"""

import re
from typing import Dict, List, Optional
from urllib.parse import urlparse

BASIC = 'basic'
MULTIPLE_CHOICE = 'multiple_choice'
TRUE_FALSE = 'true_false'
CLOZE = 'cloze'
TYPED_ANSWER = 'typed_answer'
IMAGE_OCCLUSION = 'image_occlusion'

CARD_TYPES = {
    BASIC: 'Basic Card',
    MULTIPLE_CHOICE: 'Multiple Choice',
    TRUE_FALSE: 'True/False',
    CLOZE: 'Cloze Deletion',
    TYPED_ANSWER: 'Typed Answer',
    IMAGE_OCCLUSION: 'Image Occlusion',
}
DIFFICULTY_LEVELS = {'easy': 'Easy', 'medium': 'Medium', 'hard': 'Hard'}

MAX_CHOICES = 6

CLOZE_PATTERN = re.compile(r'\{\{([^}]*)\}\}')
ANKI_CLOZE_PATTERN = re.compile(r'\{\{c\d+::(.*?)\}\}')
TRUE_FALSE_PATTERN = re.compile(r'^(true|false|yes|no|t|f|y|n)$', re.IGNORECASE)
CHOICE_ANSWER_PATTERN = re.compile(r'^[a-d]\)|^\d+\)')
IMAGE_URL_PATTERN = re.compile(r'\.(jpg|jpeg|png|gif|webp)$', re.IGNORECASE)
TRUE_WORDS = ('true', 'yes', 't', 'y', '1')


def requires_multiple_choice_data(card_type: str) -> bool:
    return card_type in (MULTIPLE_CHOICE, TRUE_FALSE)


def requires_cloze_data(card_type: str) -> bool:
    return card_type == CLOZE


def requires_image_data(card_type: str) -> bool:
    return card_type == IMAGE_OCCLUSION


def is_url(value: str) -> bool:
    parsed = urlparse(value or '')
    return parsed.scheme in ('http', 'https') and bool(parsed.netloc)


def validate_card_data(card: Dict) -> List[str]:
    """Return human readable problems with the card; empty when valid."""
    errors = []
    card_type = card.get('card_type') or BASIC
    if card_type not in CARD_TYPES:
        errors.append(f"Unknown card type: {card_type}")
        return errors
    if not (card.get('question') or '').strip():
        errors.append('Question is required')
    if not (card.get('answer') or '').strip():
        errors.append('Answer is required')
    difficulty = card.get('difficulty_level') or 'medium'
    if difficulty not in DIFFICULTY_LEVELS:
        errors.append('Difficulty level must be easy, medium, or hard')

    choices = card.get('choices') or []
    correct = card.get('correct_choices') or []
    if card_type == MULTIPLE_CHOICE:
        if len(choices) < 2:
            errors.append('Multiple choice cards must have at least 2 choices')
        if not correct:
            errors.append('Multiple choice cards must have at least one correct answer')
        elif any(not isinstance(i, int) or i < 0 or i >= len(choices) for i in correct):
            errors.append('Correct choices must reference existing choices')
    elif card_type == TRUE_FALSE:
        if len(choices) != 2:
            errors.append('True/false cards must have exactly 2 choices')
        if not correct:
            errors.append('True/false cards must have a correct answer')
    elif card_type == CLOZE:
        if not (card.get('cloze_text') or '').strip():
            errors.append('Cloze cards must have cloze text')
        if not card.get('cloze_answers'):
            errors.append('Cloze cards must have cloze answers')
    elif card_type == IMAGE_OCCLUSION:
        if not card.get('question_image_url'):
            errors.append('Image occlusion cards must have a question image')
        if not card.get('occlusion_data'):
            errors.append('Image occlusion cards must have occlusion data')
    return errors


def detect_card_type(card: Dict) -> str:
    """Guess the card type from its question, answer and choices."""
    question = card.get('question') or ''
    answer = card.get('answer') or ''
    choices = card.get('choices')

    if CLOZE_PATTERN.search(question) or CLOZE_PATTERN.search(answer):
        return CLOZE
    if isinstance(choices, list) and len(choices) > 2:
        return MULTIPLE_CHOICE
    if CHOICE_ANSWER_PATTERN.match(answer) or ';' in answer:
        return MULTIPLE_CHOICE
    if TRUE_FALSE_PATTERN.match(answer.strip()):
        return TRUE_FALSE
    if is_url(question) and IMAGE_URL_PATTERN.search(question):
        return IMAGE_OCCLUSION
    return BASIC


def _unique(items: List[str]) -> List[str]:
    return list(dict.fromkeys(items))


def process_multiple_choice(card: Dict) -> Dict:
    answer = card.get('answer') or ''
    choices = list(card.get('choices') or [])
    correct = list(card.get('correct_choices') or [])
    if not choices:
        if ';' in answer:
            choices = [c.strip() for c in answer.split(';')]
        elif '\n' in answer:
            choices = [c.strip() for c in answer.split('\n') if c.strip()]
        else:
            choices = [answer, 'Option B', 'Option C', 'Option D']
    if not correct:
        correct = [0]
    choices = choices[:MAX_CHOICES]
    return {
        **card,
        'choices': choices,
        'correct_choices': correct,
        'answer': ', '.join(choices[i] if 0 <= i < len(choices) else '' for i in correct),
    }


def process_true_false(card: Dict) -> Dict:
    is_true = (card.get('answer') or '').strip().lower() in TRUE_WORDS
    return {
        **card,
        'choices': ['True', 'False'],
        'correct_choices': [0 if is_true else 1],
        'answer': 'True' if is_true else 'False',
    }


def process_cloze(card: Dict) -> Dict:
    question = card.get('question') or ''
    answer = card.get('answer') or ''
    # normalise Anki style {{c1::x}} first so the blanks read as plain {{x}}
    question_norm = ANKI_CLOZE_PATTERN.sub(r'{{\1}}', question)
    answer_norm = ANKI_CLOZE_PATTERN.sub(r'{{\1}}', answer)
    existing = ANKI_CLOZE_PATTERN.sub(r'{{\1}}', card.get('cloze_text') or '')
    if CLOZE_PATTERN.search(existing):
        cloze_text = existing
    elif CLOZE_PATTERN.search(question_norm):
        cloze_text = question_norm
    elif CLOZE_PATTERN.search(answer_norm):
        cloze_text = answer_norm
    elif answer and answer in question:
        cloze_text = question.replace(answer, '{{' + answer + '}}')
    else:
        cloze_text = f"{question} {{{{{answer}}}}}".strip()
    cloze_answers = _unique(CLOZE_PATTERN.findall(cloze_text))
    return {
        **card,
        'cloze_text': cloze_text,
        'cloze_answers': cloze_answers,
        'question': CLOZE_PATTERN.sub('[...]', cloze_text),
        'answer': ', '.join(cloze_answers),
    }


def default_occlusion(answer: str) -> List[Dict]:
    return [{'type': 'rectangle', 'x': 100, 'y': 100, 'width': 200, 'height': 50, 'answer': answer}]


def process_image_occlusion(card: Dict) -> Dict:
    question = card.get('question') or ''
    return {
        **card,
        'question_image_url': card.get('question_image_url') or (question if is_url(question) else None),
        'occlusion_data': card.get('occlusion_data') or default_occlusion(card.get('answer') or ''),
    }


_PROCESSORS = {
    MULTIPLE_CHOICE: process_multiple_choice,
    TRUE_FALSE: process_true_false,
    CLOZE: process_cloze,
    IMAGE_OCCLUSION: process_image_occlusion,
}


def process_card_by_type(card: Dict) -> Dict:
    """Fill the type specific fields for `card['card_type']`."""
    processor = _PROCESSORS.get(card.get('card_type'))
    if processor is None:
        return dict(card)
    return processor(card)


def normalize_card(card: Dict) -> Dict:
    """Detect the type when missing, then process the card for that type."""
    out = dict(card)
    if not out.get('card_type'):
        out['card_type'] = detect_card_type(out)
    return process_card_by_type(out)


def question_text(card: Dict) -> str:
    """Plain question text used by text based export formats."""
    card_type = card.get('card_type')
    question = card.get('question') or ''
    if card_type == MULTIPLE_CHOICE:
        choices = card.get('choices') or []
        if choices:
            lines = [f"{chr(65 + i)}) {c}" for i, c in enumerate(choices)]
            return question + "\n\nOptions:\n" + "\n".join(lines) + "\n"
        return question
    if card_type == TRUE_FALSE:
        return question + "\n\n(True or False)"
    if card_type == CLOZE:
        cloze_text = card.get('cloze_text')
        return CLOZE_PATTERN.sub('[...]', cloze_text) if cloze_text else question
    return question


def answer_text(card: Dict) -> str:
    """Plain answer text used by text based export formats."""
    card_type = card.get('card_type')
    if card_type == MULTIPLE_CHOICE:
        choices = card.get('choices') or []
        correct = card.get('correct_choices') or []
        if choices and correct:
            picked = [f"{chr(65 + i)}) {choices[i]}" for i in correct if 0 <= i < len(choices)]
            return ', '.join(picked)
    if card_type == CLOZE and card.get('cloze_answers'):
        return ', '.join(card['cloze_answers'])
    return card.get('answer') or ''


def validate_answer(card: Dict, submitted: Dict) -> Dict:
    """Check a learner's answer against the card.

    `submitted` may carry `selected_choices`, `user_answer`,
    `cloze_answers` and `is_correct`. For basic and image occlusion cards
    the learner's self-assessment (`is_correct`) is used as-is.
    """
    out = {
        'is_correct': False,
        'correct_answer': card.get('answer'),
        'user_answer': None,
        'feedback': '',
    }
    card_type = card.get('card_type')
    if card_type in (MULTIPLE_CHOICE, TRUE_FALSE):
        selected = submitted.get('selected_choices')
        if isinstance(selected, list):
            correct = card.get('correct_choices') or []
            out['is_correct'] = len(selected) == len(correct) and set(selected) == set(correct)
            out['user_answer'] = selected
    elif card_type == TYPED_ANSWER:
        given = submitted.get('user_answer')
        if given is not None:
            given = given.strip()
            out['is_correct'] = given.lower() == (card.get('answer') or '').strip().lower()
            out['user_answer'] = given
    elif card_type == CLOZE:
        given = submitted.get('cloze_answers')
        if isinstance(given, list):
            expected = card.get('cloze_answers') or []
            all_correct = True
            for idx, exp in enumerate(expected):
                got = given[idx].strip() if idx < len(given) and given[idx] is not None else ''
                if got.lower() != exp.strip().lower():
                    all_correct = False
                    break
            out['is_correct'] = all_correct
            out['user_answer'] = given
    else:
        out['is_correct'] = submitted.get('is_correct')
        out['user_answer'] = submitted.get('user_answer') or 'self-assessed'
    if out['is_correct'] is True:
        out['feedback'] = 'Correct!'
    elif out['is_correct'] is False:
        out['feedback'] = f"The correct answer is: {out['correct_answer']}"
    return out


def card_type_options() -> Dict[str, str]:
    return dict(CARD_TYPES)


def coerce_int_list(values: Optional[List]) -> List[int]:
    """Convert a list of numeric strings/ints to ints, dropping junk."""
    out = []
    for v in values or []:
        try:
            out.append(int(str(v).strip()))
        except ValueError:
            continue
    return out
