"""Map points: 3D landmarks observed by keyframes."""

from __future__ import annotations

import itertools
import math
import threading
from typing import Any

import numpy as np


def descriptor_distance(a: Any, b: Any) -> int:
    """Hamming distance between two binary descriptors given as byte arrays."""
    xa = np.asarray(a, dtype=np.uint8).ravel()
    xb = np.asarray(b, dtype=np.uint8).ravel()
    return int(np.unpackbits(np.bitwise_xor(xa, xb)).sum())


def _as_vec3(pos: Any) -> np.ndarray:
    return np.array(pos, dtype=float).reshape(3)


class MapPoint:
    """A landmark with its observations, descriptor, normal and scale range.

    Keyframes are expected to provide ``id``, ``frame_id``, ``right_coords``,
    ``descriptors``, ``keys_un`` (items with ``octave``), ``scale_factors``,
    ``scale_levels``, ``log_scale_factor``, ``camera_center()``, ``is_bad()``,
    ``erase_map_point_match(idx)`` and ``replace_map_point_match(idx, point)``.
    """

    _ids = itertools.count()
    global_lock = threading.Lock()

    def __init__(self, pos: Any, key_frame: Any, map_: Any) -> None:
        self._init_common(pos, map_)
        self.first_kf_id = key_frame.id
        self.first_frame = key_frame.frame_id
        self._ref_kf = key_frame
        self._normal = np.zeros(3)
        self.min_distance = 0.0
        self.max_distance = 0.0
        self._descriptor: np.ndarray | None = None
        self._assign_id()

    @classmethod
    def from_frame(cls, pos: Any, map_: Any, frame: Any, idx: int) -> "MapPoint":
        """Create a point seen in a plain frame at feature ``idx``."""
        point = cls.__new__(cls)
        point._init_common(pos, map_)
        point.first_kf_id = -1
        point.first_frame = frame.id
        point._ref_kf = None
        centre = _as_vec3(frame.camera_center())
        offset = point._world_pos - centre
        dist = float(np.linalg.norm(offset))
        point._normal = offset / dist
        level = frame.keys_un[idx].octave
        point.max_distance = dist * frame.scale_factors[level]
        point.min_distance = point.max_distance / frame.scale_factors[frame.scale_levels - 1]
        point._descriptor = np.array(frame.descriptors[idx], dtype=np.uint8)
        point._assign_id()
        return point

    def _init_common(self, pos: Any, map_: Any) -> None:
        self._lock = threading.RLock()
        self._world_pos = _as_vec3(pos)
        self._map = map_
        self._observations: dict[Any, int] = {}
        self._n_obs = 0
        self._visible = 1
        self._found = 1
        self._bad = False
        self._replaced: MapPoint | None = None
        self.track_reference_for_frame = 0
        self.last_frame_seen = 0
        self.ba_local_for_kf = 0
        self.fuse_candidate_for_kf = 0
        self.loop_point_for_kf = 0
        self.corrected_by_kf = 0
        self.corrected_reference = 0
        self.ba_global_for_kf = 0
        self.pos_gba: np.ndarray | None = None

    def _assign_id(self) -> None:
        with self._map.point_creation_lock:
            self.id = next(MapPoint._ids)

    def set_world_pos(self, pos: Any) -> None:
        with MapPoint.global_lock, self._lock:
            self._world_pos = _as_vec3(pos)

    def world_pos(self) -> np.ndarray:
        with self._lock:
            return self._world_pos.copy()

    def normal(self) -> np.ndarray:
        with self._lock:
            return self._normal.copy()

    def reference_key_frame(self) -> Any:
        with self._lock:
            return self._ref_kf

    def add_observation(self, key_frame: Any, idx: int) -> None:
        """Record that ``key_frame`` sees this point at feature ``idx``."""
        with self._lock:
            if key_frame in self._observations:
                return
            self._observations[key_frame] = idx
            self._n_obs += 2 if key_frame.right_coords[idx] >= 0 else 1

    def erase_observation(self, key_frame: Any) -> None:
        """Forget an observation; a point left with two or fewer is discarded."""
        bad = False
        with self._lock:
            if key_frame in self._observations:
                idx = self._observations.pop(key_frame)
                self._n_obs -= 2 if key_frame.right_coords[idx] >= 0 else 1
                if self._ref_kf is key_frame:
                    self._ref_kf = next(iter(self._observations), None)
                bad = self._n_obs <= 2
        if bad:
            self.set_bad_flag()

    def observations(self) -> dict[Any, int]:
        with self._lock:
            return dict(self._observations)

    def n_observations(self) -> int:
        with self._lock:
            return self._n_obs

    def set_bad_flag(self) -> None:
        """Mark the point bad, detach it from its keyframes and the map."""
        with self._lock:
            self._bad = True
            obs = self._observations
            self._observations = {}
        for key_frame, idx in obs.items():
            key_frame.erase_map_point_match(idx)
        self._map.erase_map_point(self)

    def replaced(self) -> "MapPoint | None":
        with self._lock:
            return self._replaced

    def replace(self, other: "MapPoint") -> None:
        """Merge this point into ``other`` and discard this one."""
        if other.id == self.id:
            return
        with self._lock:
            obs = self._observations
            self._observations = {}
            self._bad = True
            visible, found = self._visible, self._found
            self._replaced = other
        for key_frame, idx in obs.items():
            if not other.is_in_key_frame(key_frame):
                key_frame.replace_map_point_match(idx, other)
                other.add_observation(key_frame, idx)
            else:
                key_frame.erase_map_point_match(idx)
        other.increase_found(found)
        other.increase_visible(visible)
        other.compute_distinctive_descriptors()
        self._map.erase_map_point(self)

    def is_bad(self) -> bool:
        with self._lock:
            return self._bad

    def increase_visible(self, n: int = 1) -> None:
        with self._lock:
            self._visible += n

    def increase_found(self, n: int = 1) -> None:
        with self._lock:
            self._found += n

    def found_ratio(self) -> float:
        with self._lock:
            return self._found / self._visible

    def compute_distinctive_descriptors(self) -> None:
        """Pick the observed descriptor with the least median distance to the rest."""
        with self._lock:
            if self._bad:
                return
            observations = dict(self._observations)
        descriptors = [
            np.asarray(kf.descriptors[idx], dtype=np.uint8)
            for kf, idx in observations.items()
            if not kf.is_bad()
        ]
        if not descriptors:
            return
        n = len(descriptors)
        distances = np.zeros((n, n), dtype=int)
        for i, j in itertools.combinations(range(n), 2):
            d = descriptor_distance(descriptors[i], descriptors[j])
            distances[i, j] = distances[j, i] = d
        median_pos = int(0.5 * (n - 1))
        best_median = math.inf
        best_idx = 0
        for i, row in enumerate(distances):
            median = sorted(row)[median_pos]
            if median < best_median:
                best_median = median
                best_idx = i
        with self._lock:
            self._descriptor = descriptors[best_idx].copy()

    def descriptor(self) -> np.ndarray | None:
        with self._lock:
            return None if self._descriptor is None else self._descriptor.copy()

    def index_in_key_frame(self, key_frame: Any) -> int:
        with self._lock:
            return self._observations.get(key_frame, -1)

    def is_in_key_frame(self, key_frame: Any) -> bool:
        with self._lock:
            return key_frame in self._observations

    def update_normal_and_depth(self) -> None:
        """Recompute the mean viewing direction and the scale-invariance distances."""
        with self._lock:
            if self._bad:
                return
            observations = dict(self._observations)
            ref_kf = self._ref_kf
            pos = self._world_pos.copy()
        if not observations:
            return
        normal = np.zeros(3)
        for key_frame in observations:
            offset = pos - _as_vec3(key_frame.camera_center())
            normal += offset / np.linalg.norm(offset)
        dist = float(np.linalg.norm(pos - _as_vec3(ref_kf.camera_center())))
        level = ref_kf.keys_un[observations.get(ref_kf, 0)].octave
        level_scale = ref_kf.scale_factors[level]
        with self._lock:
            self.max_distance = dist * level_scale
            self.min_distance = self.max_distance / ref_kf.scale_factors[ref_kf.scale_levels - 1]
            self._normal = normal / len(observations)

    def min_distance_invariance(self) -> float:
        with self._lock:
            return 0.8 * self.min_distance

    def max_distance_invariance(self) -> float:
        with self._lock:
            return 1.2 * self.max_distance

    def predict_scale(self, current_dist: float, frame: Any) -> int:
        """Predict the pyramid level at which the point appears at ``current_dist``."""
        with self._lock:
            ratio = self.max_distance / current_dist
        if ratio <= 0:
            return 0
        scale = math.ceil(math.log(ratio) / frame.log_scale_factor)
        if scale < 0:
            return 0
        if scale >= frame.scale_levels:
            return frame.scale_levels - 1
        return scale