def _complete_session(client, headers, curriculum):
    s = client.post('/sessions', json={'topic_id': curriculum['topic_id'], 'child_id': curriculum['child_id']},
                    headers=headers).json()
    r = client.post(f"/sessions/{s['id']}/complete", json={'evidence_notes': 'drew a leaf'}, headers=headers)
    assert r.status_code == 200
    assert r.json()['status'] == 'done'
    assert r.json()['completed_at'] is not None
    return s['id']


def test_completed_session_creates_one_review(client, headers, curriculum):
    child_id = curriculum['child_id']
    session_id = _complete_session(client, headers, curriculum)
    queue = client.get(f'/children/{child_id}/reviews', headers=headers).json()
    assert queue['total'] == 1
    review = queue['reviews'][0]
    assert review['session_id'] == session_id
    assert review['status'] == 'new'
    assert review['review_type'] == 'topic'
    assert review['topic_title'] == 'Photosynthesis'
    assert review['interval_days'] == 1
    assert review['days_until_due'] == 1

    # completing again or flipping status back to done keeps the same review
    client.post(f'/sessions/{session_id}/complete', headers=headers)
    client.put(f'/sessions/{session_id}', json={'status': 'done'}, headers=headers)
    assert client.get(f'/children/{child_id}/reviews', headers=headers).json()['total'] == 1


def test_process_review(client, headers, curriculum):
    child_id = curriculum['child_id']
    _complete_session(client, headers, curriculum)
    review_id = client.get(f'/children/{child_id}/reviews/session', headers=headers).json()['current']['id']

    assert client.post(f'/reviews/{review_id}/process', json={'result': 'perfect'}, headers=headers).status_code == 422

    r = client.post(f'/reviews/{review_id}/process', json={'result': 'good'}, headers=headers)
    assert r.status_code == 200
    body = r.json()
    assert body['success'] is True
    assert body['review_type'] == 'topic'
    assert body['result']['old_interval'] == 1
    assert body['result']['new_interval'] == 3
    assert body['result']['status'] == 'learning'
    assert body['session_complete'] is True
    assert body['next_review'] is None

    shown = client.get(f'/reviews/{review_id}', headers=headers).json()
    assert shown['repetitions'] == 1
    assert shown['formatted_interval'] == '3d'
    assert client.get(f'/children/{child_id}/reviews/session', headers=headers).json()['session_complete'] is True

    stats = client.get(f'/children/{child_id}/reviews/stats', headers=headers).json()
    assert stats['total'] == 1
    assert stats['by_status']['learning'] == 1
    assert stats['reviewed_last_7_days'] == 1
    assert stats['due_today'] == 0


def test_deleting_session_deletes_its_review(client, headers, curriculum):
    child_id = curriculum['child_id']
    session_id = _complete_session(client, headers, curriculum)
    review_id = client.get(f'/children/{child_id}/reviews', headers=headers).json()['reviews'][0]['id']
    assert client.delete(f'/sessions/{session_id}', headers=headers).status_code == 200
    assert client.get(f'/reviews/{review_id}', headers=headers).status_code == 404
    assert client.get(f'/children/{child_id}/reviews', headers=headers).json()['total'] == 0


def test_flashcard_reviews_check_the_answer(client, headers, curriculum):
    child_id = curriculum['child_id']
    topic_id = curriculum['topic_id']
    card = client.post(f'/topics/{topic_id}/flashcards', json={
        'card_type': 'multiple_choice',
        'question': 'Which gas do plants take in?',
        'answer': 'Carbon dioxide',
        'choices': ['Oxygen', 'Carbon dioxide', 'Helium'],
        'correct_choices': [1],
    }, headers=headers)
    assert card.status_code == 201

    enrol = client.post(f'/children/{child_id}/topics/{topic_id}/flashcards/enrol', headers=headers)
    assert enrol.json() == {'created': 1, 'skipped': 0}
    again = client.post(f'/children/{child_id}/topics/{topic_id}/flashcards/enrol', headers=headers)
    assert again.json() == {'created': 0, 'skipped': 1}

    current = client.get(f'/children/{child_id}/reviews/session', headers=headers).json()['current']
    assert current['review_type'] == 'flashcard'
    assert current['flashcard']['choices'] == ['Oxygen', 'Carbon dioxide', 'Helium']

    r = client.post(f"/reviews/{current['id']}/process",
                    json={'result': 'good', 'selected_choices': [0]}, headers=headers)
    body = r.json()
    assert body['result']['rating'] == 'again'
    assert body['result']['answer_validation']['is_correct'] is False
    assert body['result']['answer_validation']['feedback'] == 'The correct answer is: Carbon dioxide'
    assert body['result']['new_interval'] == 1
    assert body['review_type'] == 'flashcard'


def test_review_of_another_parent_is_not_found(client, headers, login_as, curriculum):
    _complete_session(client, headers, curriculum)
    review_id = client.get(f"/children/{curriculum['child_id']}/reviews", headers=headers).json()['reviews'][0]['id']
    other = login_as()
    assert client.get(f'/reviews/{review_id}', headers=other).status_code == 404
    assert client.post(f'/reviews/{review_id}/process', json={'result': 'easy'}, headers=other).status_code == 404
