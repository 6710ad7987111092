"""The map: the set of keyframes and map points that make up the reconstruction."""

from __future__ import annotations

import threading
from typing import Any, Iterable


class Map:
    """Thread-safe container of keyframes and map points."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._key_frames: dict[Any, None] = {}
        self._map_points: dict[Any, None] = {}
        self._reference_map_points: list[Any] = []
        self._max_kf_id = 0
        self._big_change_idx = 0
        self.key_frame_origins: list[Any] = []
        # Guards id assignment of new map points.
        self.point_creation_lock = threading.Lock()
        # Held while the map is changed as a whole (loop correction, global BA).
        self.map_update_lock = threading.RLock()

    def add_key_frame(self, key_frame: Any) -> None:
        """Insert a keyframe and keep track of the largest keyframe id."""
        with self._lock:
            self._key_frames[key_frame] = None
            if key_frame.id > self._max_kf_id:
                self._max_kf_id = key_frame.id

    def add_map_point(self, map_point: Any) -> None:
        with self._lock:
            self._map_points[map_point] = None

    def erase_map_point(self, map_point: Any) -> None:
        with self._lock:
            self._map_points.pop(map_point, None)

    def erase_key_frame(self, key_frame: Any) -> None:
        with self._lock:
            self._key_frames.pop(key_frame, None)

    def set_reference_map_points(self, map_points: Iterable[Any]) -> None:
        with self._lock:
            self._reference_map_points = list(map_points)

    def reference_map_points(self) -> list[Any]:
        with self._lock:
            return list(self._reference_map_points)

    def inform_new_big_change(self) -> None:
        """Record that a large change (loop closure, global BA) happened."""
        with self._lock:
            self._big_change_idx += 1

    def last_big_change_idx(self) -> int:
        with self._lock:
            return self._big_change_idx

    def key_frames(self) -> list[Any]:
        with self._lock:
            return list(self._key_frames)

    def map_points(self) -> list[Any]:
        with self._lock:
            return list(self._map_points)

    def map_points_in_map(self) -> int:
        with self._lock:
            return len(self._map_points)

    def key_frames_in_map(self) -> int:
        with self._lock:
            return len(self._key_frames)

    def max_key_frame_id(self) -> int:
        with self._lock:
            return self._max_kf_id

    def clear(self) -> None:
        """Drop every keyframe and map point and reset the counters."""
        with self._lock:
            self._map_points.clear()
            self._key_frames.clear()
            self._max_kf_id = 0
            self._reference_map_points.clear()
            self.key_frame_origins.clear()