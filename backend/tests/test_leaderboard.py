from quizlive.services.live.leaderboard import as_dicts, project
from quizlive.services.live.store import Participant


def _people(*scores):
    return [Participant(id=f'p{i}', name=f'P{i}', joined_at=i, score=s) for i, s in enumerate(scores)]


def test_sorted_by_score_with_ranks():
    board = project(_people(10, 30, 20))
    assert [e.participant_id for e in board] == ['p1', 'p2', 'p0']
    assert [e.rank for e in board] == [1, 2, 3]


def test_ties_keep_join_order():
    board = project(_people(5, 7, 5, 7))
    assert [e.participant_id for e in board] == ['p1', 'p3', 'p0', 'p2']


def test_truncates_to_limit():
    people = _people(*range(15))
    assert len(project(people)) == 10
    assert len(project(people, limit=3)) == 3
    assert len(project(people, limit=None)) == 15


def test_entry_shape():
    people = _people(4)
    people[0].connected = False
    assert as_dicts(project(people)) == [{
        'participantId': 'p0',
        'name': 'P0',
        'score': 4,
        'connected': False,
        'answeredQuestions': 0,
        'rank': 1,
    }]
