import csv
import io
import json
import zipfile
from datetime import date, datetime, timezone

import pytest

from homeschool.utils import exporters

CARDS = [
    {
        'id': 1, 'card_type': 'basic', 'question': 'Line one\nline two', 'answer': 'Tab\there',
        'hint': 'think', 'choices': [], 'correct_choices': [], 'difficulty_level': 'easy', 'tags': ['bio'],
        'created_at': datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc), 'updated_at': None,
    },
    {
        'id': 2, 'card_type': 'multiple_choice', 'question': 'Largest planet?', 'answer': 'Jupiter',
        'choices': ['Mars', 'Jupiter'], 'correct_choices': [1], 'difficulty_level': 'medium', 'tags': [],
    },
    {
        'id': 3, 'card_type': 'cloze', 'question': '[...] is red', 'answer': 'Mars',
        'cloze_text': '{{Mars}} is red', 'cloze_answers': ['Mars'], 'difficulty_level': 'hard', 'tags': [],
    },
]


def test_generate_filename():
    assert exporters.generate_filename('My Deck!', 'csv', today=date(2026, 10, 19)) == 'My-Deck-2026-10-19.csv'


def test_quizlet_flattens_whitespace():
    out = exporters.export_flashcards(CARDS, 'quizlet', {'basename': 'deck'})
    lines = out['content'].decode().split('\n')
    assert out['mime_type'] == 'text/tab-separated-values'
    assert out['filename'].endswith('.tsv')
    assert lines[0] == 'Line one line two\tTab here'
    assert lines[1].startswith('Largest planet?') and lines[1].endswith('\tB) Jupiter')


def test_csv_columns():
    out = exporters.export_flashcards(CARDS, 'csv')
    rows = list(csv.reader(io.StringIO(out['content'].decode())))
    assert rows[0] == exporters.CSV_HEADER
    assert rows[1][0] == '1'
    assert rows[2][5] == 'Mars;Jupiter'
    assert rows[2][6] == '1'
    assert rows[1][14] == '2026-10-01T12:00:00+00:00'


def test_json_metadata_toggle():
    unit = {'id': 9, 'name': 'Space', 'description': None}
    full = json.loads(exporters.export_flashcards(CARDS, 'json', {'unit': unit})['content'])
    assert full['total_cards'] == 3
    assert full['unit'] == unit
    assert full['flashcards'][1]['choices'] == ['Mars', 'Jupiter']
    assert full['flashcards'][2]['cloze_answers'] == ['Mars']
    assert 'created_at' in full['flashcards'][0]
    bare = json.loads(exporters.export_flashcards(CARDS, 'json', {'unit': unit, 'include_metadata': False})['content'])
    assert 'unit' not in bare
    assert 'created_at' not in bare['flashcards'][0]


def test_mnemosyne_and_supermemo():
    xml = exporters.export_flashcards(CARDS, 'mnemosyne')['content'].decode()
    assert '<Q><![CDATA[[...] is red]]></Q>' in xml
    assert '<tags>bio</tags>' in xml
    text = exporters.export_flashcards(CARDS[2:], 'supermemo')['content'].decode()
    assert text == 'Q: [...] is red\nA: Mars\n'


def test_anki_package_layout():
    out = exporters.export_flashcards(CARDS, 'anki', {'deck_name': 'Space'})
    with zipfile.ZipFile(io.BytesIO(out['content'])) as zf:
        assert sorted(zf.namelist()) == ['collection.anki2', 'media']
        assert zf.read('media') == b'{}'
    assert out['filename'].endswith('.apkg')


def test_export_rejects_bad_input():
    with pytest.raises(ValueError, match='No flashcards'):
        exporters.export_flashcards([], 'csv')
    with pytest.raises(ValueError, match='Invalid export format'):
        exporters.export_flashcards(CARDS, 'pptx')
