import json

CSV = b'What is the capital of France?,Paris\nWhat is 2 + 2?,4\n'


def _import(client, headers, topic_id, content=CSV, filename='cards.csv', **form):
    return client.post(f'/topics/{topic_id}/flashcards/import',
                       files={'file': (filename, content, 'text/csv')}, data=form, headers=headers)


def test_flashcard_crud_and_soft_delete(client, headers, curriculum):
    topic_id = curriculum['topic_id']
    r = client.post(f'/topics/{topic_id}/flashcards',
                    json={'question': 'What do leaves need?', 'answer': 'Light', 'tags': ['plants']}, headers=headers)
    assert r.status_code == 201
    card = r.json()
    assert card['card_type'] == 'basic'
    assert card['unit_id'] == curriculum['unit_id']
    assert card['is_active'] is True

    r = client.put(f"/flashcards/{card['id']}", json={'answer': 'Sunlight', 'difficulty_level': 'easy'}, headers=headers)
    assert r.json()['answer'] == 'Sunlight'
    assert r.json()['updated_at'] is not None

    deleted = client.delete(f"/flashcards/{card['id']}", headers=headers)
    assert deleted.json()['is_active'] is False
    assert client.get(f'/topics/{topic_id}/flashcards', headers=headers).json() == []
    listed = client.get(f'/topics/{topic_id}/flashcards', params={'include_inactive': True}, headers=headers).json()
    assert [c['id'] for c in listed] == [card['id']]

    assert client.post(f"/flashcards/{card['id']}/restore", headers=headers).json()['is_active'] is True
    r = client.post(f'/topics/{topic_id}/flashcards/bulk-status',
                    json={'flashcard_ids': [card['id']], 'is_active': False}, headers=headers)
    assert r.json() == {'updated': 1}
    assert client.get(f"/units/{curriculum['unit_id']}/flashcards", headers=headers).json() == []


def test_card_type_validation(client, headers, curriculum):
    topic_id = curriculum['topic_id']
    r = client.post(f'/topics/{topic_id}/flashcards', json={
        'card_type': 'multiple_choice', 'question': 'Pick one', 'answer': 'x',
        'choices': ['a', 'b'], 'correct_choices': [5],
    }, headers=headers)
    assert r.status_code == 400
    assert 'Correct choices must reference existing choices' in r.json()['detail']

    r = client.post(f'/topics/{topic_id}/flashcards', json={
        'card_type': 'true_false', 'question': 'Plants breathe', 'answer': 'yes',
    }, headers=headers)
    assert r.json()['choices'] == ['True', 'False']
    assert r.json()['correct_choices'] == [0]

    filtered = client.get(f'/topics/{topic_id}/flashcards', params={'card_type': 'true_false'}, headers=headers)
    assert len(filtered.json()) == 1

    types = client.get('/flashcards/card-types', headers=headers).json()
    assert 'cloze' in types['card_types']
    assert set(types['difficulty_levels']) == {'easy', 'medium', 'hard'}
    assert 'anki' in types['export_formats']


def test_csv_import_and_duplicate_resolution(client, headers, curriculum):
    topic_id = curriculum['topic_id']
    r = _import(client, headers, topic_id)
    assert r.status_code == 200
    assert r.json()['status'] == 'completed'
    assert r.json()['imported'] == 2
    assert r.json()['source'] == 'csv'

    dup = _import(client, headers, topic_id).json()
    assert dup['status'] == 'duplicates_found'
    assert dup['duplicate_count'] == 2
    assert dup['duplicates'][0]['match_reason'] == 'exact_match'
    assert dup['duplicates'][0]['suggested_action'] == 'skip'

    skip = _import(client, headers, topic_id, merge_strategy=json.dumps({'global_action': 'skip'})).json()
    assert skip['imported'] == 0
    assert skip['skipped'] == 2

    both = _import(client, headers, topic_id, merge_strategy=json.dumps({'actions': {'0': 'keep_both'}})).json()
    assert both['imported'] == 1
    assert both['skipped'] == 1
    assert len(client.get(f'/topics/{topic_id}/flashcards', headers=headers).json()) == 3

    dry = _import(client, headers, topic_id, check_duplicates='false', dry_run='true').json()
    assert dry['status'] == 'dry_run'
    assert dry['would_import'] == 2
    assert len(client.get(f'/topics/{topic_id}/flashcards', headers=headers).json()) == 3

    history = client.get('/imports', headers=headers).json()
    assert [h['imported_cards'] for h in history] == [1, 0, 2]
    assert history[-1]['filename'] == 'cards.csv'


def test_import_rejects_bad_requests(client, headers, curriculum):
    topic_id = curriculum['topic_id']
    r = _import(client, headers, topic_id, merge_strategy=json.dumps({'global_action': 'merge'}))
    assert r.status_code == 400
    assert r.json()['detail'].startswith('invalid merge_strategy')
    r = _import(client, headers, topic_id, filename='cards.pages')
    assert r.status_code == 400
    assert r.json()['detail'].startswith('Unsupported file type')
    r = _import(client, headers, topic_id, content=b'')
    assert r.status_code == 400


def test_partial_import_reports_line_errors(client, headers, curriculum):
    content = b'Capital of Italy?\tRome\nno delimiter here\nLargest ocean?\tPacific\n'
    r = _import(client, headers, curriculum['topic_id'], content=content, filename='cards.tsv')
    body = r.json()
    assert body['status'] == 'partial'
    assert body['imported'] == 2
    assert body['failed'] == 1
    assert body['errors'][0].startswith('Line 2:')


def test_preview_and_text_import(client, headers, curriculum):
    topic_id = curriculum['topic_id']
    preview = client.post(f'/topics/{topic_id}/flashcards/import/preview',
                          files={'file': ('cards.csv', CSV, 'text/csv')}, headers=headers).json()
    assert preview['total'] == 2
    assert preview['valid'] == 2
    assert preview['duplicate_count'] == 0
    assert client.get(f'/topics/{topic_id}/flashcards', headers=headers).json() == []

    text = 'The Sun - A star\nThe Moon - Satellite of the Earth'
    r = client.post(f'/topics/{topic_id}/flashcards/import/text/preview', json={'content': text}, headers=headers)
    assert r.json()['source'] == 'text'
    assert r.json()['valid'] == 2

    r = client.post(f'/topics/{topic_id}/flashcards/import/text', json={'content': text}, headers=headers)
    assert r.json()['imported'] == 2
    r = client.post(f'/topics/{topic_id}/flashcards/import/text',
                    json={'content': text, 'merge_strategy': {'global_action': 'skip'}}, headers=headers)
    assert r.json()['skipped'] == 2


def test_export_unit(client, headers, curriculum):
    unit_id = curriculum['unit_id']
    _import(client, headers, curriculum['topic_id'])
    r = client.post(f'/units/{unit_id}/flashcards/export', json={'format': 'json'}, headers=headers)
    assert r.status_code == 200
    assert r.headers['content-type'].startswith('application/json')
    assert r.headers['content-disposition'].startswith('attachment; filename="Plants-flashcards-')
    body = r.json()
    assert body['total_cards'] == 2
    assert body['unit']['name'] == 'Plants'

    r = client.post(f'/units/{unit_id}/flashcards/export', json={'format': 'csv', 'flashcard_ids': [body['flashcards'][0]['id']]},
                    headers=headers)
    assert len(r.text.strip().splitlines()) == 2

    assert client.post(f'/units/{unit_id}/flashcards/export', json={'format': 'pptx'}, headers=headers).status_code == 400
    empty = client.post(f"/subjects/{curriculum['subject_id']}/units", json={'name': 'Empty'}, headers=headers).json()
    r = client.post(f"/units/{empty['id']}/flashcards/export", json={'format': 'csv'}, headers=headers)
    assert r.status_code == 400


def test_preview_reports_invalid_rows(client, headers, curriculum):
    rows = [
        {'question': 'What is a seed?', 'answer': 'A baby plant'},
        {'question': 'What is pollen?', 'answer': '', 'difficulty_level': 'extreme'},
    ]
    r = client.post(f"/topics/{curriculum['topic_id']}/flashcards/import/preview",
                    files={'file': ('cards.json', json.dumps(rows).encode(), 'application/json')}, headers=headers)
    assert r.status_code == 200
    body = r.json()
    assert body['total'] == 2
    assert body['valid'] == 1
    assert body['errors'] == ['Row 2: Answer is required, Difficulty level must be easy, medium, or hard']
    assert [c['question'] for c in body['cards']] == ['What is a seed?']
