"""Geometry for drawing the map: points, keyframe frustums and graph edges."""

from __future__ import annotations

import threading
from typing import Any, Mapping

import numpy as np

# Covisibility edges drawn only for neighbours sharing at least this many points.
_GRAPH_MIN_WEIGHT = 100


def camera_frustum_lines(size: float) -> np.ndarray:
    """Line segments of a camera frustum in camera coordinates, shape ``(8, 2, 3)``."""
    w = size
    h = w * 0.75
    z = w * 0.6
    origin = (0.0, 0.0, 0.0)
    segments = [
        (origin, (w, h, z)),
        (origin, (w, -h, z)),
        (origin, (-w, -h, z)),
        (origin, (-w, h, z)),
        ((w, h, z), (w, -h, z)),
        ((-w, h, z), (-w, -h, z)),
        ((-w, h, z), (w, h, z)),
        ((-w, -h, z), (w, -h, z)),
    ]
    return np.array(segments, dtype=float)


def _transform(segments: np.ndarray, twc: np.ndarray) -> np.ndarray:
    return segments @ twc[:3, :3].T + twc[:3, 3]


def _segments(items: list[Any]) -> np.ndarray:
    return np.array(items, dtype=float).reshape(-1, 2, 3)


class MapDrawer:
    """Produces the world-space geometry needed to render a map."""

    def __init__(
        self,
        map_: Any,
        key_frame_size: float = 0.05,
        key_frame_line_width: float = 1.0,
        graph_line_width: float = 0.9,
        point_size: float = 2.0,
        camera_size: float = 0.08,
        camera_line_width: float = 3.0,
    ) -> None:
        self._map = map_
        self.key_frame_size = key_frame_size
        self.key_frame_line_width = key_frame_line_width
        self.graph_line_width = graph_line_width
        self.point_size = point_size
        self.camera_size = camera_size
        self.camera_line_width = camera_line_width
        self._camera_lock = threading.Lock()
        self._camera_pose: np.ndarray | None = None

    @classmethod
    def from_settings(cls, map_: Any, settings: Mapping[str, float]) -> "MapDrawer":
        """Build a drawer from ``Viewer.*`` entries of a settings mapping."""
        return cls(
            map_,
            key_frame_size=float(settings["Viewer.KeyFrameSize"]),
            key_frame_line_width=float(settings["Viewer.KeyFrameLineWidth"]),
            graph_line_width=float(settings["Viewer.GraphLineWidth"]),
            point_size=float(settings["Viewer.PointSize"]),
            camera_size=float(settings["Viewer.CameraSize"]),
            camera_line_width=float(settings["Viewer.CameraLineWidth"]),
        )

    def map_point_positions(self) -> tuple[np.ndarray, np.ndarray]:
        """Positions of ordinary and of reference map points, each ``(n, 3)``; bad points skipped."""
        points = self._map.map_points()
        references = self._map.reference_map_points()
        reference_set = set(references)
        ordinary = [
            p.world_pos() for p in points if not p.is_bad() and p not in reference_set
        ]
        reference = [p.world_pos() for p in dict.fromkeys(references) if not p.is_bad()]
        return (
            np.array(ordinary, dtype=float).reshape(-1, 3),
            np.array(reference, dtype=float).reshape(-1, 3),
        )

    def key_frame_lines(self) -> np.ndarray:
        """Frustum segments of every keyframe in world coordinates."""
        frustum = camera_frustum_lines(self.key_frame_size)
        parts = [_transform(frustum, kf.pose_inverse()) for kf in self._map.key_frames()]
        if not parts:
            return np.zeros((0, 2, 3))
        return np.concatenate(parts)

    def graph_lines(self) -> np.ndarray:
        """Covisibility, spanning-tree and loop segments between camera centres."""
        segments = []
        for kf in self._map.key_frames():
            centre = kf.camera_center()
            for other in kf.covisibles_by_weight(_GRAPH_MIN_WEIGHT):
                if other.id < kf.id:
                    continue
                segments.append((centre, other.camera_center()))
            parent = kf.parent()
            if parent is not None:
                segments.append((centre, parent.camera_center()))
            for other in sorted(kf.loop_edges(), key=lambda k: k.id):
                if other.id < kf.id:
                    continue
                segments.append((centre, other.camera_center()))
        return _segments(segments)

    def current_camera_lines(self) -> np.ndarray:
        """Frustum segments of the current camera in world coordinates."""
        twc = self.current_opengl_camera_matrix().reshape(4, 4, order="F")
        return _transform(camera_frustum_lines(self.camera_size), twc)

    def set_current_camera_pose(self, tcw: Any) -> None:
        with self._camera_lock:
            self._camera_pose = np.array(tcw, dtype=float).reshape(4, 4)

    def current_opengl_camera_matrix(self) -> np.ndarray:
        """Camera-to-world transform as 16 values in column-major order."""
        with self._camera_lock:
            pose = None if self._camera_pose is None else self._camera_pose.copy()
        if pose is None:
            return np.eye(4).ravel(order="F")
        rwc = pose[:3, :3].T
        twc = np.eye(4)
        twc[:3, :3] = rwc
        twc[:3, 3] = -rwc @ pose[:3, 3]
        return twc.ravel(order="F")