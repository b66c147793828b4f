from homeschool.utils import duplicates


def card(question, answer, **kw):
    return dict(question=question, answer=answer, **kw)


def test_normalize_and_similarity():
    assert duplicates.normalize_text('  What <b>is</b>   H2O?! ') == 'what is h2o'
    assert duplicates.text_similarity('What is H2O?', 'what is h2o') == 1.0
    assert duplicates.text_similarity('', 'anything') == 0.0
    assert duplicates.card_similarity('Same question', 'x', 'Same question', 'y') >= 0.7


def test_long_text_uses_word_overlap():
    a = ' '.join(['alpha'] * 60) + ' beta'
    b = ' '.join(['alpha'] * 60) + ' gamma'
    assert duplicates.text_similarity(a, b) == duplicates.word_similarity(
        duplicates.normalize_text(a), duplicates.normalize_text(b)
    )


def test_detect_existing_and_within_import():
    existing = [card('What is the capital of France?', 'Paris', id=7)]
    incoming = [
        card('What is the capital of France?', 'Paris'),
        card('Name the largest ocean', 'Pacific'),
        card('Name the largest ocean', 'Pacific'),
        card('Hi?', 'Short questions are never compared'),
    ]
    result = duplicates.detect_duplicates(incoming, existing)
    assert result['duplicate_count'] == 2
    assert result['unique_count'] == 2
    first, second = result['duplicates']
    assert first['import_index'] == 0
    assert first['duplicate_type'] == 'existing'
    assert first['existing_card']['id'] == 7
    assert first['match_reason'] == 'exact_match'
    assert first['suggested_action'] == 'skip'
    assert second['import_index'] == 2
    assert second['duplicate_type'] == 'within_import'
    assert second['match_reason'] == 'exact_match_in_import'


def test_near_identical_question_is_similar_match():
    existing = [card('What is the capital city of France?', 'Paris', id=1)]
    result = duplicates.detect_duplicates([card('What is the capital city of Frances?', 'Paris')], existing)
    dup = result['duplicates'][0]
    assert dup['match_reason'] == 'similar_content'
    assert 0.8 <= dup['similarity_score'] < 1.0


def test_suggest_action_thresholds():
    assert duplicates.suggest_action(0.97, 'existing') == 'skip'
    assert duplicates.suggest_action(0.92, 'existing') == 'review'
    assert duplicates.suggest_action(0.85, 'existing') == 'update'
    assert duplicates.suggest_action(0.85, 'within_import') == 'keep_both'


def test_action_for_strategy():
    dup = {'import_index': 3}
    assert duplicates.action_for(dup, {'global_action': 'replace'}) == 'replace'
    assert duplicates.action_for(dup, {'actions': {'3': 'keep_both'}}) == 'keep_both'
    assert duplicates.action_for(dup, {'actions': {3: 'update'}}) == 'update'
    assert duplicates.action_for(dup, {}) == 'skip'
