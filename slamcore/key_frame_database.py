"""Inverted-file database of keyframes for loop and relocalisation queries."""

from __future__ import annotations

import threading
from typing import Any

# Candidates must share more than this fraction of the best word count.
_COMMON_WORDS_RATIO = 0.8
# Candidates are kept when their accumulated score exceeds this fraction of the best.
_RETAIN_RATIO = 0.75
# Number of covisible neighbours whose scores are accumulated.
_NEIGHBOURS = 10


def _unique(items: list[Any]) -> list[Any]:
    seen: set[Any] = set()
    result = []
    for item in items:
        if item not in seen:
            seen.add(item)
            result.append(item)
    return result


class KeyFrameDatabase:
    """Maps each vocabulary word to the keyframes whose bag of words contains it.

    ``vocabulary`` must support ``len()`` and ``score(bow_a, bow_b)``.
    Keyframes provide ``id``, ``bow_vec`` (word id to weight),
    ``connected_key_frames()``, ``best_covisibility_key_frames(n)`` and the
    writable scratch fields ``loop_query``, ``loop_words``, ``loop_score``,
    ``reloc_query``, ``reloc_words`` and ``reloc_score``.
    """

    def __init__(self, vocabulary: Any) -> None:
        self._vocabulary = vocabulary
        self._lock = threading.Lock()
        self._inverted_file: list[list[Any]] = [[] for _ in range(len(vocabulary))]

    def add(self, key_frame: Any) -> None:
        """Index ``key_frame`` under every word of its bag of words."""
        with self._lock:
            for word in sorted(key_frame.bow_vec):
                self._inverted_file[word].append(key_frame)

    def erase(self, key_frame: Any) -> None:
        """Remove ``key_frame`` from the lists of all its words."""
        with self._lock:
            for word in sorted(key_frame.bow_vec):
                entries = self._inverted_file[word]
                for position, entry in enumerate(entries):
                    if entry is key_frame:
                        del entries[position]
                        break

    def clear(self) -> None:
        with self._lock:
            self._inverted_file = [[] for _ in range(len(self._vocabulary))]

    def detect_loop_candidates(self, key_frame: Any, min_score: float) -> list[Any]:
        """Keyframes similar to ``key_frame`` but not connected to it in the covisibility graph."""
        connected = key_frame.connected_key_frames()
        sharing: list[Any] = []

        with self._lock:
            for word in sorted(key_frame.bow_vec):
                for other in self._inverted_file[word]:
                    if other.loop_query != key_frame.id:
                        other.loop_words = 0
                        if other not in connected:
                            other.loop_query = key_frame.id
                            sharing.append(other)
                    other.loop_words += 1

        if not sharing:
            return []

        max_common = max(other.loop_words for other in sharing)
        min_common = int(max_common * _COMMON_WORDS_RATIO)

        scored: list[tuple[float, Any]] = []
        for other in sharing:
            if other.loop_words > min_common:
                score = self._vocabulary.score(key_frame.bow_vec, other.bow_vec)
                other.loop_score = score
                if score >= min_score:
                    scored.append((score, other))

        if not scored:
            return []

        accumulated: list[tuple[float, Any]] = []
        best_acc = min_score
        for score, other in scored:
            best_score = score
            acc_score = score
            best_kf = other
            for neighbour in other.best_covisibility_key_frames(_NEIGHBOURS):
                if neighbour.loop_query == key_frame.id and neighbour.loop_words > min_common:
                    acc_score += neighbour.loop_score
                    if neighbour.loop_score > best_score:
                        best_kf = neighbour
                        best_score = neighbour.loop_score
            accumulated.append((acc_score, best_kf))
            best_acc = max(best_acc, acc_score)

        threshold = _RETAIN_RATIO * best_acc
        return _unique([kf for acc, kf in accumulated if acc > threshold])

    def detect_relocalization_candidates(self, frame: Any) -> list[Any]:
        """Keyframes similar to ``frame``, which provides ``id`` and ``bow_vec``."""
        sharing: list[Any] = []

        with self._lock:
            for word in sorted(frame.bow_vec):
                for other in self._inverted_file[word]:
                    if other.reloc_query != frame.id:
                        other.reloc_words = 0
                        other.reloc_query = frame.id
                        sharing.append(other)
                    other.reloc_words += 1

        if not sharing:
            return []

        max_common = max(other.reloc_words for other in sharing)
        min_common = int(max_common * _COMMON_WORDS_RATIO)

        scored: list[tuple[float, Any]] = []
        for other in sharing:
            if other.reloc_words > min_common:
                score = self._vocabulary.score(frame.bow_vec, other.bow_vec)
                other.reloc_score = score
                scored.append((score, other))

        if not scored:
            return []

        accumulated: list[tuple[float, Any]] = []
        best_acc = 0.0
        for score, other in scored:
            best_score = score
            acc_score = score
            best_kf = other
            for neighbour in other.best_covisibility_key_frames(_NEIGHBOURS):
                if neighbour.reloc_query != frame.id:
                    continue
                acc_score += neighbour.reloc_score
                if neighbour.reloc_score > best_score:
                    best_kf = neighbour
                    best_score = neighbour.reloc_score
            accumulated.append((acc_score, best_kf))
            best_acc = max(best_acc, acc_score)

        threshold = _RETAIN_RATIO * best_acc
        return _unique([kf for acc, kf in accumulated if acc > threshold])