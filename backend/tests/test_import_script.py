import importlib.util
import json
import uuid
from pathlib import Path

import pytest

SCRIPT = Path(__file__).resolve().parents[1] / 'scripts' / 'import_flashcards.py'


@pytest.fixture(scope='module')
def import_script():
    spec = importlib.util.spec_from_file_location('import_flashcards', SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def owned_topic(client, login_as):
    username = f'cli-{uuid.uuid4().hex[:8]}'
    h = login_as(username)
    subject = client.post('/subjects', json={'name': 'Geography'}, headers=h).json()
    unit = client.post(f"/subjects/{subject['id']}/units", json={'name': 'Capitals'}, headers=h).json()
    topic = client.post(f"/units/{unit['id']}/topics", json={'title': 'Europe'}, headers=h).json()
    return username, topic['id'], h


def _summary(capsys):
    return json.loads(capsys.readouterr().out.strip().splitlines()[-1])


def test_cli_imports_and_skips_duplicates(import_script, owned_topic, client, tmp_path, capsys):
    username, topic_id, h = owned_topic
    cards = tmp_path / 'capitals.csv'
    cards.write_text('Which river flows through Cairo?,Nile\nName the highest mountain in Africa,Kilimanjaro\n')

    assert import_script.main(username, topic_id, [cards], dry_run=True) == 0
    assert _summary(capsys) == {'imported': 0, 'failed': 0, 'dry_run': True}
    assert client.get(f'/topics/{topic_id}/flashcards', headers=h).json() == []

    assert import_script.main(username, topic_id, [cards]) == 0
    assert _summary(capsys) == {'imported': 2, 'failed': 0, 'dry_run': False}

    assert import_script.main(username, topic_id, [cards]) == 0
    assert _summary(capsys) == {'imported': 0, 'failed': 0, 'dry_run': False}
    assert len(client.get(f'/topics/{topic_id}/flashcards', headers=h).json()) == 2


def test_cli_reports_missing_user_and_files(import_script, owned_topic, tmp_path, capsys):
    username, topic_id, _ = owned_topic
    assert import_script.main('nobody-here', topic_id, [tmp_path / 'x.csv']) == 1
    assert 'User not found: nobody-here' in capsys.readouterr().out

    bad = tmp_path / 'notes.pages'
    bad.write_bytes(b'data')
    assert import_script.main(username, topic_id, [tmp_path / 'missing.csv', bad]) == 0
    out = capsys.readouterr().out
    assert 'File not found' in out
    assert 'Unsupported file type' in out
    assert json.loads(out.strip().splitlines()[-1])['failed'] == 2
