import io
import json
import sqlite3

import pytest
from docx import Document

from homeschool.utils import card_types, exporters, parsers


def make_docx_bytes(lines):
    doc = Document()
    for line in lines:
        doc.add_paragraph(line)
    bio = io.BytesIO()
    doc.save(bio)
    return bio.getvalue()


def test_detect_card_type():
    assert card_types.detect_card_type({'question': 'The {{sun}} is a star', 'answer': ''}) == 'cloze'
    assert card_types.detect_card_type({'question': 'Water is wet', 'answer': 'true'}) == 'true_false'
    assert card_types.detect_card_type({'question': 'Primary colours', 'answer': 'Red;Blue;Yellow'}) == 'multiple_choice'
    assert card_types.detect_card_type({'question': 'Capital of Peru?', 'answer': 'Lima'}) == 'basic'


def test_multiple_choice_from_semicolon_answer():
    card = card_types.normalize_card({'question': 'Pick red', 'answer': 'Red;Blue;Green'})
    assert card['card_type'] == 'multiple_choice'
    assert card['choices'] == ['Red', 'Blue', 'Green']
    assert card['correct_choices'] == [0]
    assert card['answer'] == 'Red'


def test_true_false_normalised():
    card = card_types.process_card_by_type({'card_type': 'true_false', 'question': 'Fish swim', 'answer': 'yes'})
    assert card['choices'] == ['True', 'False']
    assert card['correct_choices'] == [0]
    assert card['answer'] == 'True'


def test_cloze_accepts_anki_syntax():
    card = card_types.process_card_by_type({
        'card_type': 'cloze', 'question': '{{c1::Paris}} is the capital of {{c2::France}}', 'answer': '',
    })
    assert card['cloze_text'] == '{{Paris}} is the capital of {{France}}'
    assert card['cloze_answers'] == ['Paris', 'France']
    assert card['question'] == '[...] is the capital of [...]'
    assert card['answer'] == 'Paris, France'


def test_validate_card_data_reports_problems():
    errors = card_types.validate_card_data({
        'card_type': 'multiple_choice', 'question': 'Q', 'answer': 'A', 'choices': ['only'], 'correct_choices': [3],
    })
    assert 'Multiple choice cards must have at least 2 choices' in errors
    assert 'Correct choices must reference existing choices' in errors
    assert card_types.validate_card_data({'card_type': 'hologram', 'question': 'Q', 'answer': 'A'}) == [
        'Unknown card type: hologram'
    ]


def test_validate_answer_per_type():
    mc = {'card_type': 'multiple_choice', 'answer': 'B', 'correct_choices': [1, 2]}
    assert card_types.validate_answer(mc, {'selected_choices': [2, 1]})['is_correct'] is True
    assert card_types.validate_answer(mc, {'selected_choices': [1]})['is_correct'] is False

    typed = {'card_type': 'typed_answer', 'answer': 'Mitochondria'}
    result = card_types.validate_answer(typed, {'user_answer': '  mitochondria '})
    assert result['is_correct'] is True
    assert result['feedback'] == 'Correct!'

    cloze = {'card_type': 'cloze', 'answer': 'Paris', 'cloze_answers': ['Paris', 'France']}
    assert card_types.validate_answer(cloze, {'cloze_answers': ['paris', 'FRANCE']})['is_correct'] is True
    wrong = card_types.validate_answer(cloze, {'cloze_answers': ['paris']})
    assert wrong['is_correct'] is False
    assert wrong['feedback'] == 'The correct answer is: Paris'

    basic = {'card_type': 'basic', 'answer': 'A'}
    assert card_types.validate_answer(basic, {'is_correct': True})['user_answer'] == 'self-assessed'


def test_parse_text_skips_bad_lines():
    parsed = parsers.parse_text('Q one\tA one\nbroken line\nQ three\tA three #bio\n')
    assert parsed['delimiter'] == '\t'
    assert [c['question'] for c in parsed['cards']] == ['Q one', 'Q three']
    assert parsed['cards'][1]['tags'] == ['bio']
    assert parsed['errors'] == ['Line 2: Must contain at least question and answer separated by delimiter']


def test_parse_text_extended_format():
    line = 'multiple_choice,Largest planet?,Jupiter,Mars;Jupiter;Venus,1,Think big,space;planets'
    parsed = parsers.parse_text(line)
    card = parsed['cards'][0]
    assert card['card_type'] == 'multiple_choice'
    assert card['choices'] == ['Mars', 'Jupiter', 'Venus']
    assert card['correct_choices'] == [1]
    assert card['hint'] == 'Think big'
    assert card['tags'] == ['space', 'planets']


def test_parse_text_without_delimiter_fails():
    with pytest.raises(ValueError):
        parsers.parse_text('just one word\nanother')


def test_parse_json_alternative_keys():
    data = json.dumps({'flashcards': [{'front': 'Sky colour?', 'back': 'Blue', 'tags': ['weather']}]}).encode()
    res = parsers.parse_file_to_cards(data, 'deck.json')
    assert res['source'] == 'json'
    assert res['cards'][0]['question'] == 'Sky colour?'
    assert res['cards'][0]['answer'] == 'Blue'
    assert res['cards'][0]['card_type'] == 'basic'


def test_parse_docx():
    content = make_docx_bytes(['What gas do plants absorb? - Carbon dioxide', 'What do roots take up? - Water'])
    res = parsers.parse_file_to_cards(content, 'plants.docx')
    assert res['source'] == 'docx'
    assert [c['answer'] for c in res['cards']] == ['Carbon dioxide', 'Water']


def test_parse_mnemosyne_xml_with_bare_ampersand():
    xml = (
        '<?xml version="1.0"?><mnemosyne>'
        '<card><Q>Tom & Jerry?</Q><A>Cartoon</A><cat>TV</cat><grade>5</grade></card>'
        '<card><Q></Q><A>orphan</A></card>'
        '</mnemosyne>'
    )
    res = parsers.parse_file_to_cards(xml.encode(), 'export.xml')
    assert res['source'] == 'mnemosyne'
    assert len(res['cards']) == 1
    card = res['cards'][0]
    assert card['question'] == 'Tom & Jerry?'
    assert card['tags'] == ['TV']
    assert card['difficulty_level'] == 'hard'


def test_parse_mnemosyne_text_lines():
    cards = parsers.parse_mnemosyne('# comment\nHola\tHello\nAdios | Goodbye\n')
    assert [(c['question'], c['answer']) for c in cards] == [('Hola', 'Hello'), ('Adios', 'Goodbye')]


def test_parse_anki_package_from_export():
    cards = [{'card_type': 'basic', 'question': 'H2O is?', 'answer': 'Water', 'tags': ['chem']}]
    apkg = exporters.export_flashcards(cards, 'anki', {'deck_name': 'Chemistry'})['content']
    res = parsers.parse_file_to_cards(apkg, 'chem.apkg')
    assert res['source'] == 'anki'
    assert res['cards'] == [{
        'card_type': 'basic', 'question': 'H2O is?', 'answer': 'Water', 'hint': None,
        'difficulty_level': 'medium', 'tags': ['chem'], 'import_source': 'anki',
    }]


def test_parse_anki_rejects_non_zip():
    with pytest.raises(ValueError, match='not a zip archive'):
        parsers.parse_file_to_cards(b'plain bytes', 'broken.apkg')


def test_unsupported_extension():
    with pytest.raises(ValueError, match='Unsupported file type'):
        parsers.parse_file_to_cards(b'data', 'cards.xlsx')


def test_card_problems():
    assert parsers.card_problems({'question': 'Q', 'answer': 'A', 'difficulty_level': 'medium', 'tags': []}) == []
    problems = parsers.card_problems({'question': ' ', 'answer': 'A', 'difficulty_level': 'extreme',
                                      'tags': ['x' * 51]})
    assert problems == [
        'Question is required',
        'Difficulty level must be easy, medium, or hard',
        'Each tag must be no more than 50 characters',
    ]


def make_pdf_bytes(lines):
    """One page PDF with each line drawn in Helvetica."""
    text = ' '.join(f'({line}) Tj T*' for line in lines)
    stream = f'BT /F1 12 Tf 14 TL 72 720 Td {text} ET'
    objects = [
        '<< /Type /Catalog /Pages 2 0 R >>',
        '<< /Type /Pages /Kids [3 0 R] /Count 1 >>',
        '<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] /Contents 4 0 R '
        '/Resources << /Font << /F1 5 0 R >> >> >>',
        f'<< /Length {len(stream)} >>\nstream\n{stream}\nendstream',
        '<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>',
    ]
    out = b'%PDF-1.4\n'
    offsets = []
    for number, body in enumerate(objects, 1):
        offsets.append(len(out))
        out += f'{number} 0 obj\n{body}\nendobj\n'.encode('latin-1')
    xref = len(out)
    out += f'xref\n0 {len(objects) + 1}\n0000000000 65535 f \n'.encode('latin-1')
    out += ''.join(f'{offset:010d} 00000 n \n' for offset in offsets).encode('latin-1')
    out += f'trailer\n<< /Size {len(objects) + 1} /Root 1 0 R >>\nstartxref\n{xref}\n%%EOF\n'.encode('latin-1')
    return out


def test_parse_pdf():
    pdf = make_pdf_bytes(['What do roots absorb?,Water', 'What do leaves make?,Sugar'])
    assert 'What do roots absorb?,Water' in parsers.parse_pdf_text(pdf)
    res = parsers.parse_file_to_cards(pdf, 'plants.pdf')
    assert res['source'] == 'pdf'
    assert [(c['question'], c['answer']) for c in res['cards']] == [
        ('What do roots absorb?', 'Water'),
        ('What do leaves make?', 'Sugar'),
    ]


def test_convert_difficulty_falls_back_to_medium():
    assert parsers.convert_difficulty('0') == 'easy'
    assert parsers.convert_difficulty('4.5') == 'hard'
    assert parsers.convert_difficulty('inf') == 'medium'
    assert parsers.convert_difficulty('-inf') == 'medium'
    assert parsers.convert_difficulty('nan') == 'medium'
    assert parsers.convert_difficulty(None) == 'medium'


def test_anki_collection_skips_models_without_field_names():
    conn = sqlite3.connect(':memory:')
    conn.execute('CREATE TABLE col (models TEXT)')
    conn.execute('CREATE TABLE notes (id INTEGER, mid INTEGER, flds TEXT, tags TEXT)')
    conn.execute('CREATE TABLE cards (nid INTEGER, ord INTEGER)')
    template = {'name': 'Card 1', 'qfmt': '{{Front}}', 'afmt': '{{FrontSide}}<hr id=answer>{{Back}}'}
    models = {
        '1': {'name': 'Basic', 'type': 0, 'flds': [{'name': 'Front'}, {'name': 'Back'}], 'tmpls': [template]},
        '2': {'name': 'Broken', 'type': 0, 'flds': [{'ord': 0}, {'ord': 1}], 'tmpls': [template]},
    }
    conn.execute('INSERT INTO col VALUES (?)', (json.dumps(models),))
    conn.executemany('INSERT INTO notes VALUES (?, ?, ?, ?)', [
        (10, 1, 'Sea water is?\x1fSalty', ' ocean '),
        (11, 2, 'Lost\x1fNote', ''),
    ])
    conn.executemany('INSERT INTO cards VALUES (?, ?)', [(10, 0), (11, 0)])
    cards = parsers._read_anki_collection(conn)
    conn.close()
    assert [(c['question'], c['answer'], c['tags']) for c in cards] == [('Sea water is?', 'Salty', ['ocean'])]
