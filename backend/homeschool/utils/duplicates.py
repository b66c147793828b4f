"""Duplicate detection for flashcard imports.

Import cards are compared against the unit's existing cards and against
the cards already accepted from the same import. Cards are plain
dictionaries with at least `question` and `answer`; existing cards also
carry their `id`.
"""

import re
from difflib import SequenceMatcher
from typing import Dict, List, Optional

from .html_sanitizer import strip_tags

SIMILARITY_THRESHOLD = 0.8
MIN_QUESTION_LENGTH = 5
MAX_COMPARISON_LIMIT = 1000
# longer texts are compared by word overlap
SEQUENCE_MAX_LENGTH = 255

ACTIONS = ('skip', 'update', 'replace', 'keep_both')


def normalize_text(text: str) -> str:
    text = strip_tags((text or '').lower())
    text = re.sub(r'\s+', ' ', text)
    text = re.sub(r'[^\w\s]', '', text)
    return text.strip()


def word_similarity(a: str, b: str) -> float:
    words_a = set(a.split())
    words_b = set(b.split())
    if not words_a or not words_b:
        return 0.0
    union = words_a | words_b
    return len(words_a & words_b) / len(union)


def text_similarity(a: str, b: str) -> float:
    a = normalize_text(a)
    b = normalize_text(b)
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    if max(len(a), len(b)) > SEQUENCE_MAX_LENGTH:
        return word_similarity(a, b)
    return SequenceMatcher(None, a, b).ratio()


def card_similarity(q1: str, a1: str, q2: str, a2: str) -> float:
    """Weighted similarity: 70% question, 30% answer."""
    return text_similarity(q1, q2) * 0.7 + text_similarity(a1, a2) * 0.3


def _exact(question: str, answer: str, candidates: List[Dict]) -> Optional[Dict]:
    nq, na = normalize_text(question), normalize_text(answer)
    for c in candidates:
        if normalize_text(c.get('question')) == nq and normalize_text(c.get('answer')) == na:
            return c
    return None


def _best_similar(question: str, answer: str, candidates: List[Dict]) -> Optional[tuple]:
    best = None
    best_score = 0.0
    for c in candidates:
        score = card_similarity(question, answer, c.get('question') or '', c.get('answer') or '')
        if score >= SIMILARITY_THRESHOLD and score > best_score:
            best, best_score = c, score
    return (best, best_score) if best is not None else None


def find_duplicate(card: Dict, existing: List[Dict], accepted: List[Dict]) -> Optional[Dict]:
    question = (card.get('question') or '').strip()
    answer = (card.get('answer') or '').strip()
    if len(question) < MIN_QUESTION_LENGTH:
        return None
    match = _exact(question, answer, existing)
    if match is not None:
        return {'type': 'existing', 'card': match, 'score': 1.0, 'reason': 'exact_match'}
    match = _exact(question, answer, accepted)
    if match is not None:
        return {'type': 'within_import', 'card': match, 'score': 1.0, 'reason': 'exact_match_in_import'}
    similar = _best_similar(question, answer, existing)
    if similar:
        return {'type': 'existing', 'card': similar[0], 'score': similar[1], 'reason': 'similar_content'}
    similar = _best_similar(question, answer, accepted)
    if similar:
        return {'type': 'within_import', 'card': similar[0], 'score': similar[1], 'reason': 'similar_content_in_import'}
    return None


def suggest_action(score: float, duplicate_type: str) -> str:
    if score >= 0.95:
        return 'skip'
    if score >= 0.9:
        return 'review'
    if score >= 0.8:
        return 'update' if duplicate_type == 'existing' else 'keep_both'
    return 'keep_both'


def detect_duplicates(cards: List[Dict], existing: List[Dict]) -> Dict:
    """Split `cards` into duplicates and unique cards.

    Each duplicate records its `import_index`, the matched card, the
    similarity score, the match reason and a suggested action.
    """
    duplicates = []
    unique = []
    for index, card in enumerate(cards):
        found = find_duplicate(card, existing, unique)
        if found is None:
            unique.append(card)
            continue
        duplicates.append({
            'import_index': index,
            'import_card': card,
            'duplicate_type': found['type'],
            'existing_card': found['card'],
            'similarity_score': round(found['score'], 4),
            'match_reason': found['reason'],
            'suggested_action': suggest_action(found['score'], found['type']),
        })
    return {
        'duplicates': duplicates,
        'unique_cards': unique,
        'total_import': len(cards),
        'duplicate_count': len(duplicates),
        'unique_count': len(unique),
        'existing_cards_checked': len(existing),
    }


def action_for(duplicate: Dict, strategy: Dict) -> str:
    """Resolve the merge action for one duplicate from a strategy.

    `strategy` holds either `global_action` or a per-index `actions` map
    (keys may be ints or numeric strings); the default is `skip`.
    """
    if strategy.get('global_action'):
        return strategy['global_action']
    actions = strategy.get('actions') or {}
    index = duplicate['import_index']
    return actions.get(index) or actions.get(str(index)) or 'skip'
