from datetime import date, timedelta
from types import SimpleNamespace

import pytest

from homeschool.utils import srs

TODAY = date(2026, 10, 19)


def make_review(**kw):
    values = dict(id=1, interval_days=1, ease_factor=2.5, repetitions=0, status='new',
                  due_date=TODAY, last_reviewed_at=None)
    values.update(kw)
    return SimpleNamespace(**values)


def test_good_ladder_three_then_seven_then_ease():
    r = make_review()
    out = srs.apply_result(r, 'good', today=TODAY)
    assert (r.interval_days, r.status, r.repetitions) == (3, 'learning', 1)
    assert out['next_due'] == 'Oct 22, 2026'
    srs.apply_result(r, 'good', today=TODAY)
    assert (r.interval_days, r.status) == (7, 'reviewing')
    srs.apply_result(r, 'good', today=TODAY)
    assert r.interval_days == 17
    assert r.due_date == TODAY + timedelta(days=17)


def test_again_resets_and_lowers_ease():
    r = make_review(interval_days=30, ease_factor=2.5, repetitions=5, status='reviewing')
    out = srs.apply_result(r, 'again', today=TODAY)
    assert r.repetitions == 0
    assert r.interval_days == 1
    assert r.status == 'learning'
    assert r.ease_factor == 2.3
    assert out['old_interval'] == 30


def test_ease_never_drops_below_floor():
    r = make_review(ease_factor=1.35)
    srs.apply_result(r, 'again', today=TODAY)
    assert r.ease_factor == srs.MIN_EASE_FACTOR
    srs.apply_result(r, 'hard', today=TODAY)
    assert r.ease_factor == srs.MIN_EASE_FACTOR


def test_easy_caps_interval_and_masters():
    r = make_review(interval_days=200, ease_factor=2.5, repetitions=4, status='reviewing')
    srs.apply_result(r, 'easy', today=TODAY)
    assert r.interval_days == srs.MAX_INTERVAL
    assert r.ease_factor == srs.MAX_EASE_FACTOR
    assert r.status == 'mastered'


def test_unknown_result_rejected():
    with pytest.raises(ValueError):
        srs.apply_result(make_review(), 'perfect', today=TODAY)


def test_priority_and_overdue():
    assert srs.priority(make_review(status='new'), TODAY) == 3
    assert srs.priority(make_review(status='learning', due_date=TODAY - timedelta(days=8)), TODAY) == 1
    assert srs.priority(make_review(status='learning', due_date=TODAY - timedelta(days=2)), TODAY) == 2
    assert srs.priority(make_review(status='learning', due_date=TODAY + timedelta(days=1)), TODAY) == 2
    assert srs.priority(make_review(status='learning', due_date=TODAY + timedelta(days=5)), TODAY) == 3
    assert srs.is_overdue(make_review(due_date=TODAY - timedelta(days=1)), TODAY)
    assert srs.days_until_due(make_review(due_date=TODAY + timedelta(days=4)), TODAY) == 4


@pytest.mark.parametrize('days,label', [(3, '3d'), (7, '1w'), (10, '1.4w'), (30, '1mo'), (75, '2.5mo')])
def test_formatted_interval(days, label):
    assert srs.formatted_interval(days) == label


def test_interleave_queue_mixes_and_dedups():
    due = [make_review(id=i, status='learning') for i in range(1, 8)]
    new = [make_review(id=100), make_review(id=101), make_review(id=2)]
    queue = srs.interleave_queue(due, new)
    ids = [r.id for r in queue]
    assert ids[:4] == [1, 2, 3, 100]
    assert ids[4:8] == [4, 5, 6, 101]
    assert ids.count(2) == 1
    assert len(ids) == 9


def test_interleave_queue_caps_length():
    due = [make_review(id=i) for i in range(1, 40)]
    assert len(srs.interleave_queue(due, [])) == srs.QUEUE_CAP
