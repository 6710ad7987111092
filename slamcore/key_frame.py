"""Keyframes: frames kept in the map, with their pose, features and graph links."""

from __future__ import annotations

import itertools
import math
import threading
from typing import Any

import numpy as np

# Minimum number of shared map points for a covisibility edge.
_COVISIBILITY_THRESHOLD = 15


class KeyFrame:
    """A keyframe of the map.

    ``frame`` provides the camera and feature data: ``id``, ``fx``, ``fy``,
    ``cx``, ``cy``, ``invfx``, ``invfy``, ``bf``, ``b``, ``th_depth``,
    ``keys``, ``keys_un`` (items with ``pt`` as ``(x, y)`` and ``octave``),
    ``right_coords``, ``depths``, ``descriptors``, ``scale_levels``,
    ``scale_factor``, ``log_scale_factor``, ``scale_factors``,
    ``level_sigma2``, ``inv_level_sigma2``, ``min_x``, ``min_y``, ``max_x``,
    ``max_y``, ``K``, ``grid`` (indexed ``[column][row]``),
    ``grid_element_width_inv``, ``grid_element_height_inv`` and ``tcw``.
    ``timestamp``, ``bow_vec``, ``feat_vec``, ``map_points`` and
    ``vocabulary`` are optional.
    """

    _ids = itertools.count()

    def __init__(self, frame: Any, map_: Any = None, database: Any = None) -> None:
        self.id = next(KeyFrame._ids)
        self.frame_id = frame.id
        self.timestamp = getattr(frame, "timestamp", 0.0)

        self.grid = [[list(cell) for cell in column] for column in frame.grid]
        self.grid_cols = len(self.grid)
        self.grid_rows = len(self.grid[0]) if self.grid else 0
        self.grid_element_width_inv = frame.grid_element_width_inv
        self.grid_element_height_inv = frame.grid_element_height_inv

        # Scratch fields used by tracking, local mapping, loop closing and BA.
        self.track_reference_for_frame = 0
        self.fuse_target_for_kf = 0
        self.ba_local_for_kf = 0
        self.ba_fixed_for_kf = 0
        self.loop_query = 0
        self.loop_words = 0
        self.loop_score = 0.0
        self.reloc_query = 0
        self.reloc_words = 0
        self.reloc_score = 0.0
        self.ba_global_for_kf = 0
        self.tcw_gba: np.ndarray | None = None
        self.tcw_bef_gba: np.ndarray | None = None
        self.tcp: np.ndarray | None = None

        self.fx, self.fy = frame.fx, frame.fy
        self.cx, self.cy = frame.cx, frame.cy
        self.invfx, self.invfy = frame.invfx, frame.invfy
        self.bf = frame.bf
        self.b = frame.b
        self.th_depth = frame.th_depth

        self.keys = list(frame.keys)
        self.keys_un = list(frame.keys_un)
        self.n = len(self.keys_un)
        self.right_coords = np.asarray(frame.right_coords, dtype=float).copy()
        self.depths = np.asarray(frame.depths, dtype=float).copy()
        self.descriptors = np.array(frame.descriptors, dtype=np.uint8)
        self.bow_vec = dict(getattr(frame, "bow_vec", None) or {})
        self.feat_vec = dict(getattr(frame, "feat_vec", None) or {})

        self.scale_levels = frame.scale_levels
        self.scale_factor = frame.scale_factor
        self.log_scale_factor = frame.log_scale_factor
        self.scale_factors = list(frame.scale_factors)
        self.level_sigma2 = list(frame.level_sigma2)
        self.inv_level_sigma2 = list(frame.inv_level_sigma2)

        self.min_x, self.min_y = frame.min_x, frame.min_y
        self.max_x, self.max_y = frame.max_x, frame.max_y
        self.K = np.array(frame.K, dtype=float)

        points = getattr(frame, "map_points", None)
        self._map_points: list[Any] = list(points) if points is not None else [None] * self.n
        self.vocabulary = getattr(frame, "vocabulary", None)
        self._database = database
        self._map = map_

        self._pose_lock = threading.RLock()
        self._conn_lock = threading.RLock()
        self._features_lock = threading.RLock()

        self._connected_weights: dict[KeyFrame, int] = {}
        self._ordered_connected: list[KeyFrame] = []
        self._ordered_weights: list[int] = []
        self._first_connection = True
        self._parent: KeyFrame | None = None
        self._children: set[KeyFrame] = set()
        self._loop_edges: set[KeyFrame] = set()
        self._not_erase = False
        self._to_be_erased = False
        self._bad = False

        self._half_baseline = frame.b / 2
        self.set_pose(frame.tcw)

    def compute_bow(self) -> None:
        """Fill the bag-of-words vectors from the descriptors if they are missing."""
        if not self.bow_vec or not self.feat_vec:
            if self.vocabulary is None:
                raise ValueError("keyframe has no vocabulary to compute its bag of words")
            bow_vec, feat_vec = self.vocabulary.transform(self.descriptors, 4)
            self.bow_vec = dict(bow_vec)
            self.feat_vec = dict(feat_vec)

    # Pose

    def set_pose(self, tcw: Any) -> None:
        """Set the world-to-camera transform and derive the inverse and centres."""
        tcw = np.array(tcw, dtype=float).reshape(4, 4)
        with self._pose_lock:
            self._tcw = tcw
            rwc = tcw[:3, :3].T
            self._ow = -rwc @ tcw[:3, 3]
            twc = np.eye(4)
            twc[:3, :3] = rwc
            twc[:3, 3] = self._ow
            self._twc = twc
            self._cw = (twc @ np.array([self._half_baseline, 0.0, 0.0, 1.0]))[:3]

    def pose(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw.copy()

    def pose_inverse(self) -> np.ndarray:
        with self._pose_lock:
            return self._twc.copy()

    def camera_center(self) -> np.ndarray:
        with self._pose_lock:
            return self._ow.copy()

    def stereo_center(self) -> np.ndarray:
        """World position of the point halfway along the stereo baseline."""
        with self._pose_lock:
            return self._cw.copy()

    def rotation(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw[:3, :3].copy()

    def translation(self) -> np.ndarray:
        with self._pose_lock:
            return self._tcw[:3, 3].copy()

    # Covisibility graph

    def add_connection(self, key_frame: "KeyFrame", weight: int) -> None:
        with self._conn_lock:
            if self._connected_weights.get(key_frame) == weight:
                return
            self._connected_weights[key_frame] = weight
        self.update_best_covisibles()

    def update_best_covisibles(self) -> None:
        """Reorder the neighbours by decreasing weight."""
        with self._conn_lock:
            pairs = sorted(
                ((w, kf) for kf, w in self._connected_weights.items()),
                key=lambda p: (p[0], p[1].id),
                reverse=True,
            )
            self._ordered_connected = [kf for _, kf in pairs]
            self._ordered_weights = [w for w, _ in pairs]

    def connected_key_frames(self) -> set["KeyFrame"]:
        with self._conn_lock:
            return set(self._connected_weights)

    def vector_covisible_key_frames(self) -> list["KeyFrame"]:
        with self._conn_lock:
            return list(self._ordered_connected)

    def best_covisibility_key_frames(self, n: int) -> list["KeyFrame"]:
        with self._conn_lock:
            return list(self._ordered_connected[:n])

    def covisibles_by_weight(self, w: int) -> list["KeyFrame"]:
        """Neighbours whose weight is at least ``w``.

        When no neighbour falls below ``w`` the result is empty, as in the
        reference behaviour of this search.
        """
        with self._conn_lock:
            for position, weight in enumerate(self._ordered_weights):
                if w > weight:
                    return list(self._ordered_connected[:position])
            return []

    def weight(self, key_frame: "KeyFrame") -> int:
        with self._conn_lock:
            return self._connected_weights.get(key_frame, 0)

    # Map point associations

    def add_map_point(self, map_point: Any, idx: int) -> None:
        with self._features_lock:
            self._map_points[idx] = map_point

    def erase_map_point_match(self, idx: int) -> None:
        with self._features_lock:
            self._map_points[idx] = None

    def erase_map_point(self, map_point: Any) -> None:
        idx = map_point.index_in_key_frame(self)
        if idx >= 0:
            self._map_points[idx] = None

    def replace_map_point_match(self, idx: int, map_point: Any) -> None:
        self._map_points[idx] = map_point

    def map_points(self) -> set[Any]:
        """The good map points seen by this keyframe."""
        with self._features_lock:
            return {p for p in self._map_points if p is not None and not p.is_bad()}

    def tracked_map_points(self, min_obs: int) -> int:
        """Count good map points, requiring ``min_obs`` observations when positive."""
        with self._features_lock:
            points = [p for p in self._map_points[: self.n] if p is not None and not p.is_bad()]
        if min_obs > 0:
            return sum(1 for p in points if p.n_observations() >= min_obs)
        return len(points)

    def map_point_matches(self) -> list[Any]:
        with self._features_lock:
            return list(self._map_points)

    def map_point(self, idx: int) -> Any:
        with self._features_lock:
            return self._map_points[idx]

    def update_connections(self) -> None:
        """Rebuild covisibility edges from the map points shared with other keyframes."""
        with self._features_lock:
            points = list(self._map_points)

        counter: dict[KeyFrame, int] = {}
        for point in points:
            if point is None or point.is_bad():
                continue
            for key_frame in point.observations():
                if key_frame.id == self.id:
                    continue
                counter[key_frame] = counter.get(key_frame, 0) + 1

        if not counter:
            return

        best_count = 0
        best_kf: KeyFrame | None = None
        pairs: list[tuple[int, KeyFrame]] = []
        for key_frame, count in sorted(counter.items(), key=lambda item: item[0].id):
            if count > best_count:
                best_count = count
                best_kf = key_frame
            if count >= _COVISIBILITY_THRESHOLD:
                pairs.append((count, key_frame))
                key_frame.add_connection(self, count)

        if not pairs and best_kf is not None:
            pairs.append((best_count, best_kf))
            best_kf.add_connection(self, best_count)

        pairs.sort(key=lambda p: (p[0], p[1].id), reverse=True)

        with self._conn_lock:
            self._connected_weights = counter
            self._ordered_connected = [kf for _, kf in pairs]
            self._ordered_weights = [w for w, _ in pairs]
            if self._first_connection and self.id != 0:
                self._parent = self._ordered_connected[0]
                self._parent.add_child(self)
                self._first_connection = False

    # Spanning tree and loop edges

    def add_child(self, key_frame: "KeyFrame") -> None:
        with self._conn_lock:
            self._children.add(key_frame)

    def erase_child(self, key_frame: "KeyFrame") -> None:
        with self._conn_lock:
            self._children.discard(key_frame)

    def change_parent(self, key_frame: "KeyFrame") -> None:
        with self._conn_lock:
            self._parent = key_frame
            key_frame.add_child(self)

    def children(self) -> set["KeyFrame"]:
        with self._conn_lock:
            return set(self._children)

    def parent(self) -> "KeyFrame | None":
        with self._conn_lock:
            return self._parent

    def has_child(self, key_frame: "KeyFrame") -> bool:
        with self._conn_lock:
            return key_frame in self._children

    def add_loop_edge(self, key_frame: "KeyFrame") -> None:
        with self._conn_lock:
            self._not_erase = True
            self._loop_edges.add(key_frame)

    def loop_edges(self) -> set["KeyFrame"]:
        with self._conn_lock:
            return set(self._loop_edges)

    # Erasure

    def set_not_erase(self) -> None:
        with self._conn_lock:
            self._not_erase = True

    def set_erase(self) -> None:
        """Allow erasure again unless loop edges hold it; apply a deferred erase."""
        with self._conn_lock:
            if not self._loop_edges:
                self._not_erase = False
        if self._to_be_erased:
            self.set_bad_flag()

    def set_bad_flag(self) -> None:
        """Remove the keyframe from the graph, reattaching its children in the tree."""
        with self._conn_lock:
            if self.id == 0:
                return
            if self._not_erase:
                self._to_be_erased = True
                return

        for key_frame in list(self._connected_weights):
            key_frame.erase_connection(self)

        for point in list(self._map_points):
            if point is not None:
                point.erase_observation(self)

        with self._conn_lock, self._features_lock:
            self._connected_weights.clear()
            self._ordered_connected.clear()
            self._ordered_weights.clear()

            candidates: set[KeyFrame] = set()
            if self._parent is not None:
                candidates.add(self._parent)

            # Repeatedly attach the child with the strongest link to a candidate parent.
            while self._children:
                best_weight = -1
                best: tuple[KeyFrame, KeyFrame] | None = None
                for child in sorted(self._children, key=lambda kf: kf.id):
                    if child.is_bad():
                        continue
                    candidate_ids = {kf.id for kf in candidates}
                    for connected in child.vector_covisible_key_frames():
                        if connected.id in candidate_ids:
                            w = child.weight(connected)
                            if w > best_weight:
                                best_weight = w
                                best = (child, connected)
                if best is None:
                    break
                child, new_parent = best
                child.change_parent(new_parent)
                candidates.add(child)
                self._children.discard(child)

            if self._parent is not None:
                for child in sorted(self._children, key=lambda kf: kf.id):
                    child.change_parent(self._parent)
                self._parent.erase_child(self)
                self.tcp = self._tcw @ self._parent.pose_inverse()
            self._bad = True

        if self._map is not None:
            self._map.erase_key_frame(self)
        if self._database is not None:
            self._database.erase(self)

    def is_bad(self) -> bool:
        with self._conn_lock:
            return self._bad

    def erase_connection(self, key_frame: "KeyFrame") -> None:
        with self._conn_lock:
            removed = self._connected_weights.pop(key_frame, None) is not None
        if removed:
            self.update_best_covisibles()

    # Geometry

    def features_in_area(self, x: float, y: float, r: float) -> list[int]:
        """Indices of undistorted keypoints strictly within ``r`` of ``(x, y)`` on both axes."""
        min_cell_x = max(0, math.floor((x - self.min_x - r) * self.grid_element_width_inv))
        if min_cell_x >= self.grid_cols:
            return []
        max_cell_x = min(self.grid_cols - 1, math.ceil((x - self.min_x + r) * self.grid_element_width_inv))
        if max_cell_x < 0:
            return []
        min_cell_y = max(0, math.floor((y - self.min_y - r) * self.grid_element_height_inv))
        if min_cell_y >= self.grid_rows:
            return []
        max_cell_y = min(self.grid_rows - 1, math.ceil((y - self.min_y + r) * self.grid_element_height_inv))
        if max_cell_y < 0:
            return []

        indices = []
        for column in self.grid[min_cell_x : max_cell_x + 1]:
            for cell in column[min_cell_y : max_cell_y + 1]:
                for idx in cell:
                    kx, ky = self.keys_un[idx].pt
                    if abs(kx - x) < r and abs(ky - y) < r:
                        indices.append(idx)
        return indices

    def is_in_image(self, x: float, y: float) -> bool:
        return self.min_x <= x < self.max_x and self.min_y <= y < self.max_y

    def unproject_stereo(self, i: int) -> np.ndarray | None:
        """World position of feature ``i`` from its depth, or ``None`` without depth."""
        z = float(self.depths[i])
        if z <= 0:
            return None
        u, v = self.keys[i].pt
        x3dc = np.array([(u - self.cx) * z * self.invfx, (v - self.cy) * z * self.invfy, z])
        with self._pose_lock:
            return self._twc[:3, :3] @ x3dc + self._twc[:3, 3]

    def compute_scene_median_depth(self, q: int) -> float:
        """Depth of the ``q``-quantile map point in camera coordinates."""
        with self._features_lock, self._pose_lock:
            points = list(self._map_points[: self.n])
            tcw = self._tcw.copy()
        row = tcw[2, :3]
        zcw = tcw[2, 3]
        depths = sorted(float(row @ p.world_pos() + zcw) for p in points if p is not None)
        if not depths:
            raise ValueError("keyframe has no map points")
        return depths[(len(depths) - 1) // q]