from types import SimpleNamespace

import pytest

from slamcore.key_frame_database import KeyFrameDatabase


class FakeVocabulary:
    def __len__(self):
        return 10

    def score(self, a, b):
        return sum(min(a[w], b[w]) for w in a if w in b)


class FakeKeyFrame:
    def __init__(self, kf_id, words, neighbours=(), connected=()):
        self.id = kf_id
        self.bow_vec = dict(words)
        self.neighbours = list(neighbours)
        self.connected = set(connected)
        self.loop_query = 0
        self.loop_words = 0
        self.loop_score = 0.0
        self.reloc_query = 0
        self.reloc_words = 0
        self.reloc_score = 0.0

    def connected_key_frames(self):
        return set(self.connected)

    def best_covisibility_key_frames(self, n):
        return self.neighbours[:n]


@pytest.fixture
def database():
    return KeyFrameDatabase(FakeVocabulary())


def test_loop_candidates_keep_only_enough_common_words(database):
    a = FakeKeyFrame(1, {1: 0.5, 2: 0.5})
    b = FakeKeyFrame(2, {1: 0.5, 3: 0.5})
    database.add(a)
    database.add(b)
    query = FakeKeyFrame(10, {1: 0.5, 2: 0.5})
    assert database.detect_loop_candidates(query, 0.1) == [a]
    assert a.loop_query == query.id
    assert a.loop_words == 2


def test_loop_candidates_exclude_connected(database):
    a = FakeKeyFrame(1, {1: 0.5, 2: 0.5})
    b = FakeKeyFrame(2, {1: 0.5, 3: 0.5})
    database.add(a)
    database.add(b)
    query = FakeKeyFrame(10, {1: 0.5, 2: 0.5}, connected=[a])
    assert database.detect_loop_candidates(query, 0.1) == [b]


def test_loop_candidates_below_min_score(database):
    database.add(FakeKeyFrame(1, {1: 0.5, 2: 0.5}))
    query = FakeKeyFrame(10, {1: 0.5, 2: 0.5})
    assert database.detect_loop_candidates(query, 1.5) == []


def test_no_shared_words(database):
    database.add(FakeKeyFrame(1, {4: 1.0}))
    query = FakeKeyFrame(10, {1: 1.0})
    assert database.detect_loop_candidates(query, 0.0) == []
    assert database.detect_relocalization_candidates(SimpleNamespace(id=3, bow_vec={1: 1.0})) == []


def test_erase_removes_key_frame(database):
    a = FakeKeyFrame(1, {1: 0.5, 2: 0.5})
    b = FakeKeyFrame(2, {1: 0.5, 2: 0.5})
    database.add(a)
    database.add(b)
    database.erase(a)
    frame = SimpleNamespace(id=5, bow_vec={1: 0.5, 2: 0.5})
    assert database.detect_relocalization_candidates(frame) == [b]


def test_clear_empties_database(database):
    database.add(FakeKeyFrame(1, {1: 0.5, 2: 0.5}))
    database.clear()
    frame = SimpleNamespace(id=5, bow_vec={1: 0.5, 2: 0.5})
    assert database.detect_relocalization_candidates(frame) == []


def test_relocalization_prefers_best_covisible_neighbour(database):
    c = FakeKeyFrame(3, {1: 0.5, 2: 0.5})
    a = FakeKeyFrame(1, {1: 0.3, 2: 0.3}, neighbours=[c])
    database.add(a)
    database.add(c)
    frame = SimpleNamespace(id=7, bow_vec={1: 0.5, 2: 0.5})
    result = database.detect_relocalization_candidates(frame)
    assert result == [c]
    assert a.reloc_query == frame.id and c.reloc_query == frame.id


def test_results_have_no_duplicates(database):
    c = FakeKeyFrame(3, {1: 0.5, 2: 0.5})
    a = FakeKeyFrame(1, {1: 0.5, 2: 0.5}, neighbours=[c])
    c.neighbours = [a]
    database.add(a)
    database.add(c)
    frame = SimpleNamespace(id=7, bow_vec={1: 0.5, 2: 0.5})
    result = database.detect_relocalization_candidates(frame)
    assert len(result) == len(set(result))
    assert set(result) <= {a, c}