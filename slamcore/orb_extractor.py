"""ORB feature extraction: FAST corners spread over an image pyramid with rBRIEF descriptors."""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from typing import Any, Sequence

import numpy as np

from slamcore.orb_pattern import bit_pattern_31, circular_patch_umax

PATCH_SIZE = 31
HALF_PATCH_SIZE = 15
EDGE_THRESHOLD = 19

# Side of the cells in which FAST corners are searched.
_CELL_SIZE = 30
_DESCRIPTOR_BYTES = 32

# Bresenham circle of radius 3 as (dx, dy), in contiguous order.
_CIRCLE = (
    (0, 3), (1, 3), (2, 2), (3, 1), (3, 0), (3, -1), (2, -2), (1, -3),
    (0, -3), (-1, -3), (-2, -2), (-3, -1), (-3, 0), (-3, 1), (-2, 2), (-1, 3),
)
_ARC_LENGTH = 9


@dataclass
class KeyPoint:
    """A detected feature: ``pt`` is ``(x, y)``, ``angle`` in degrees."""

    pt: tuple[float, float]
    size: float = 7.0
    angle: float = -1.0
    response: float = 0.0
    octave: int = 0


@dataclass(eq=False)
class ExtractorNode:
    """A rectangle of the quadtree used to spread keypoints over an image."""

    ul: tuple[int, int]
    ur: tuple[int, int]
    bl: tuple[int, int]
    br: tuple[int, int]
    keys: list[KeyPoint] = field(default_factory=list)
    no_more: bool = False

    def divide_node(self) -> tuple["ExtractorNode", "ExtractorNode", "ExtractorNode", "ExtractorNode"]:
        """Split into four quadrants and share the keypoints out between them."""
        half_x = math.ceil((self.ur[0] - self.ul[0]) / 2)
        half_y = math.ceil((self.br[1] - self.ul[1]) / 2)
        ul_x, ul_y = self.ul

        n1 = ExtractorNode(
            ul=self.ul,
            ur=(ul_x + half_x, ul_y),
            bl=(ul_x, ul_y + half_y),
            br=(ul_x + half_x, ul_y + half_y),
        )
        n2 = ExtractorNode(ul=n1.ur, ur=self.ur, bl=n1.br, br=(self.ur[0], ul_y + half_y))
        n3 = ExtractorNode(ul=n1.bl, ur=n1.br, bl=self.bl, br=(n1.br[0], self.bl[1]))
        n4 = ExtractorNode(ul=n3.ur, ur=n2.br, bl=n3.br, br=self.br)

        for kp in self.keys:
            x, y = kp.pt
            if x < n1.ur[0]:
                (n1 if y < n1.br[1] else n3).keys.append(kp)
            elif y < n1.br[1]:
                n2.keys.append(kp)
            else:
                n4.keys.append(kp)

        for child in (n1, n2, n3, n4):
            if len(child.keys) == 1:
                child.no_more = True
        return n1, n2, n3, n4


def ic_angle(image: Any, pt: Sequence[float], umax: Sequence[int]) -> float:
    """Orientation in degrees ``[0, 360)`` of the intensity centroid of the patch at ``pt``."""
    img = np.asarray(image, dtype=np.int64)
    x = int(round(pt[0]))
    y = int(round(pt[1]))
    hp = len(umax) - 1

    us = np.arange(-hp, hp + 1)
    m10 = int(us @ img[y, x - hp : x + hp + 1])
    m01 = 0
    for v in range(1, hp + 1):
        d = umax[v]
        u = np.arange(-d, d + 1)
        plus = img[y + v, x - d : x + d + 1]
        minus = img[y - v, x - d : x + d + 1]
        m01 += v * int((plus - minus).sum())
        m10 += int(u @ (plus + minus))
    return math.degrees(math.atan2(m01, m10)) % 360.0


def compute_orb_descriptor(keypoint: KeyPoint, image: Any, pattern: Any) -> np.ndarray:
    """The 32-byte rBRIEF descriptor of ``keypoint``, steered by its angle."""
    angle = math.radians(keypoint.angle)
    a, b = math.cos(angle), math.sin(angle)
    pat = np.asarray(pattern, dtype=float)
    px, py = pat[:, 0], pat[:, 1]
    rows = np.rint(px * b + py * a).astype(np.int64)
    cols = np.rint(px * a - py * b).astype(np.int64)
    cx = int(round(keypoint.pt[0]))
    cy = int(round(keypoint.pt[1]))
    values = np.asarray(image)[cy + rows, cx + cols].astype(np.int64)
    bits = values[0::2] < values[1::2]
    return np.packbits(bits.reshape(_DESCRIPTOR_BYTES, 8), axis=1, bitorder="little").ravel()


def fast(image: Any, threshold: int, nonmax_suppression: bool = True) -> list[KeyPoint]:
    """FAST-9 corners of ``image`` in row-major order.

    A pixel is a corner when 9 contiguous pixels of its radius-3 circle are
    all brighter than it by more than ``threshold`` or all darker by more.
    The response is the largest threshold for which it stays a corner.
    """
    img = np.asarray(image, dtype=np.int16)
    if img.ndim != 2:
        raise ValueError("image must be two-dimensional")
    h, w = img.shape
    if h < 7 or w < 7:
        return []

    center = img[3 : h - 3, 3 : w - 3]
    ring = np.stack([img[3 + dy : h - 3 + dy, 3 + dx : w - 3 + dx] for dx, dy in _CIRCLE]) - center
    extended = np.concatenate([ring, ring[: _ARC_LENGTH - 1]])

    bright = np.full(center.shape, np.iinfo(np.int16).min, dtype=np.int16)
    dark = np.full(center.shape, np.iinfo(np.int16).min, dtype=np.int16)
    for start in range(len(_CIRCLE)):
        arc = extended[start : start + _ARC_LENGTH]
        bright = np.maximum(bright, arc.min(axis=0))
        dark = np.maximum(dark, (-arc).min(axis=0))

    best = np.maximum(bright, dark).astype(np.int32)
    corner = best > threshold
    scores = np.zeros((h, w), dtype=np.int32)
    scores[3 : h - 3, 3 : w - 3] = np.where(corner, best - 1, 0)
    mask = np.zeros((h, w), dtype=bool)
    mask[3 : h - 3, 3 : w - 3] = corner

    if nonmax_suppression:
        padded = np.pad(scores, 1)
        for dy in (-1, 0, 1):
            for dx in (-1, 0, 1):
                if dx == 0 and dy == 0:
                    continue
                neighbour = padded[1 + dy : h + 1 + dy, 1 + dx : w + 1 + dx]
                mask &= scores > neighbour

    ys, xs = np.nonzero(mask)
    return [
        KeyPoint(pt=(float(x), float(y)), size=7.0, angle=-1.0, response=float(scores[y, x]))
        for y, x in zip(ys, xs)
    ]


def _resize_linear(src: np.ndarray, width: int, height: int) -> np.ndarray:
    sh, sw = src.shape

    def axis(n_dst: int, n_src: int) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        pos = (np.arange(n_dst) + 0.5) * (n_src / n_dst) - 0.5
        i0 = np.floor(pos).astype(np.int64)
        frac = pos - i0
        low = i0 < 0
        frac[low] = 0.0
        i0[low] = 0
        high = i0 >= n_src - 1
        frac[high] = 0.0
        i0[high] = n_src - 1
        i1 = np.minimum(i0 + 1, n_src - 1)
        return i0, i1, frac

    x0, x1, wx = axis(width, sw)
    y0, y1, wy = axis(height, sh)
    s = src.astype(float)
    top = s[y0][:, x0] * (1 - wx) + s[y0][:, x1] * wx
    bottom = s[y1][:, x0] * (1 - wx) + s[y1][:, x1] * wx
    out = top * (1 - wy)[:, None] + bottom * wy[:, None]
    return np.clip(np.rint(out), 0, 255).astype(np.uint8)


def _gaussian_blur(image: np.ndarray, ksize: int = 7, sigma: float = 2.0) -> np.ndarray:
    r = ksize // 2
    offsets = np.arange(ksize) - r
    kernel = np.exp(-(offsets**2) / (2 * sigma * sigma))
    kernel /= kernel.sum()
    padded = np.pad(image.astype(float), r, mode="reflect")
    h, w = image.shape
    rows = sum(k * padded[:, i : i + w] for i, k in enumerate(kernel))
    out = sum(k * rows[i : i + h, :] for i, k in enumerate(kernel))
    return np.clip(np.rint(out), 0, 255).astype(np.uint8)


class ORBExtractor:
    """Extracts ORB keypoints spread evenly over an image pyramid."""

    def __init__(
        self,
        nfeatures: int,
        scale_factor: float,
        nlevels: int,
        ini_th_fast: int,
        min_th_fast: int,
    ) -> None:
        if nlevels < 1:
            raise ValueError("nlevels must be at least 1")
        self.nfeatures = nfeatures
        self.scale_factor = scale_factor
        self.nlevels = nlevels
        self.ini_th_fast = ini_th_fast
        self.min_th_fast = min_th_fast

        self.scale_factors = [1.0]
        for _ in range(1, nlevels):
            self.scale_factors.append(self.scale_factors[-1] * scale_factor)
        self.level_sigma2 = [s * s for s in self.scale_factors]
        self.inv_scale_factors = [1.0 / s for s in self.scale_factors]
        self.inv_level_sigma2 = [1.0 / s2 for s2 in self.level_sigma2]

        factor = 1.0 / scale_factor
        desired = nfeatures * (1 - factor) / (1 - factor**nlevels)
        per_level = []
        for _ in range(nlevels - 1):
            per_level.append(round(desired))
            desired *= factor
        per_level.append(max(nfeatures - sum(per_level), 0))
        self.features_per_level = per_level

        self.pattern = bit_pattern_31()
        self.umax = circular_patch_umax(HALF_PATCH_SIZE)
        self.image_pyramid: list[np.ndarray] = []
        self._bordered: list[np.ndarray] = []

    def __call__(self, image: Any) -> tuple[list[KeyPoint], np.ndarray]:
        """Keypoints in level-0 coordinates and their ``(n, 32)`` uint8 descriptors."""
        img = np.asarray(image)
        if img.size == 0:
            return [], np.zeros((0, _DESCRIPTOR_BYTES), dtype=np.uint8)
        if img.ndim != 2 or img.dtype != np.uint8:
            raise ValueError("image must be a two-dimensional uint8 array")

        self.compute_pyramid(img)
        all_keypoints = self.compute_key_points_oct_tree()

        keypoints: list[KeyPoint] = []
        descriptors: list[np.ndarray] = []
        for level, level_keys in enumerate(all_keypoints):
            if not level_keys:
                continue
            blurred = _gaussian_blur(self.image_pyramid[level])
            padded = np.pad(blurred, EDGE_THRESHOLD, mode="reflect")
            for kp in level_keys:
                shifted = replace(kp, pt=(kp.pt[0] + EDGE_THRESHOLD, kp.pt[1] + EDGE_THRESHOLD))
                descriptors.append(compute_orb_descriptor(shifted, padded, self.pattern))
            if level != 0:
                scale = self.scale_factors[level]
                level_keys = [replace(kp, pt=(kp.pt[0] * scale, kp.pt[1] * scale)) for kp in level_keys]
            keypoints.extend(level_keys)

        desc = np.array(descriptors, dtype=np.uint8).reshape(-1, _DESCRIPTOR_BYTES)
        return keypoints, desc

    def compute_pyramid(self, image: Any) -> list[np.ndarray]:
        """Build the scaled images of every level, level 0 being ``image`` itself."""
        img = np.asarray(image, dtype=np.uint8)
        pyramid: list[np.ndarray] = []
        bordered: list[np.ndarray] = []
        rows, cols = img.shape
        for level in range(self.nlevels):
            scale = self.inv_scale_factors[level]
            width = round(cols * scale)
            height = round(rows * scale)
            if width <= 0 or height <= 0:
                raise ValueError("image is too small for the number of pyramid levels")
            inner = img.copy() if level == 0 else _resize_linear(pyramid[-1], width, height)
            pyramid.append(inner)
            bordered.append(np.pad(inner, EDGE_THRESHOLD, mode="reflect"))
        self.image_pyramid = pyramid
        self._bordered = bordered
        return pyramid

    def compute_key_points_oct_tree(self) -> list[list[KeyPoint]]:
        """Detect, distribute and orient keypoints on each pyramid level."""
        if not self.image_pyramid:
            raise RuntimeError("compute_pyramid must be called first")

        all_keypoints: list[list[KeyPoint]] = []
        for level, img in enumerate(self.image_pyramid):
            min_bx = EDGE_THRESHOLD - 3
            min_by = min_bx
            max_bx = img.shape[1] - EDGE_THRESHOLD + 3
            max_by = img.shape[0] - EDGE_THRESHOLD + 3
            width = float(max_bx - min_bx)
            height = float(max_by - min_by)
            n_cols = int(width / _CELL_SIZE)
            n_rows = int(height / _CELL_SIZE)
            if n_cols <= 0 or n_rows <= 0:
                all_keypoints.append([])
                continue
            w_cell = math.ceil(width / n_cols)
            h_cell = math.ceil(height / n_rows)

            to_distribute: list[KeyPoint] = []
            for i in range(n_rows):
                ini_y = min_by + i * h_cell
                if ini_y >= max_by - 3:
                    continue
                max_y = min(ini_y + h_cell + 6, max_by)
                for j in range(n_cols):
                    ini_x = min_bx + j * w_cell
                    if ini_x >= max_bx - 6:
                        continue
                    max_x = min(ini_x + w_cell + 6, max_bx)
                    cell = img[ini_y:max_y, ini_x:max_x]
                    cell_keys = fast(cell, self.ini_th_fast, True)
                    if not cell_keys:
                        cell_keys = fast(cell, self.min_th_fast, True)
                    to_distribute.extend(
                        replace(kp, pt=(kp.pt[0] + j * w_cell, kp.pt[1] + i * h_cell)) for kp in cell_keys
                    )

            keys = self.distribute_oct_tree(
                to_distribute, min_bx, max_bx, min_by, max_by, self.features_per_level[level], level
            )
            scaled_patch = int(PATCH_SIZE * self.scale_factors[level])
            bordered = self._bordered[level]
            oriented = []
            for kp in keys:
                x, y = kp.pt[0] + min_bx, kp.pt[1] + min_by
                angle = ic_angle(bordered, (x + EDGE_THRESHOLD, y + EDGE_THRESHOLD), self.umax)
                oriented.append(replace(kp, pt=(x, y), octave=level, size=scaled_patch, angle=angle))
            all_keypoints.append(oriented)
        return all_keypoints

    def distribute_oct_tree(
        self,
        keys: Sequence[KeyPoint],
        min_x: int,
        max_x: int,
        min_y: int,
        max_y: int,
        n: int,
        level: int,
    ) -> list[KeyPoint]:
        """Keep about ``n`` keypoints spread over the area, the strongest of each quadtree node.

        Keypoint coordinates are relative to ``(min_x, min_y)``.
        """
        if not keys:
            return []
        width = max_x - min_x
        height = max_y - min_y
        n_ini = max(1, math.floor(width / height + 0.5))
        hx = width / n_ini

        initial = [
            ExtractorNode(
                ul=(int(hx * i), 0),
                ur=(int(hx * (i + 1)), 0),
                bl=(int(hx * i), height),
                br=(int(hx * (i + 1)), height),
            )
            for i in range(n_ini)
        ]
        for kp in keys:
            initial[min(int(kp.pt[0] / hx), n_ini - 1)].keys.append(kp)

        nodes = [node for node in initial if node.keys]
        for node in nodes:
            if len(node.keys) == 1:
                node.no_more = True

        while True:
            prev_size = len(nodes)
            created: list[ExtractorNode] = []
            kept: list[ExtractorNode] = []
            expandable: list[ExtractorNode] = []
            for node in nodes:
                if node.no_more:
                    kept.append(node)
                    continue
                for child in node.divide_node():
                    if child.keys:
                        created.append(child)
                        if len(child.keys) > 1:
                            expandable.append(child)
            nodes = created[::-1] + kept

            if len(nodes) >= n or len(nodes) == prev_size:
                break
            if len(nodes) + 3 * len(expandable) > n:
                # Close to the target: split the most populated nodes first.
                while True:
                    prev_size = len(nodes)
                    previous = sorted(expandable, key=lambda nd: len(nd.keys))
                    expandable = []
                    for node in reversed(previous):
                        for child in node.divide_node():
                            if child.keys:
                                nodes.insert(0, child)
                                if len(child.keys) > 1:
                                    expandable.append(child)
                        nodes.remove(node)
                        if len(nodes) >= n:
                            break
                    if len(nodes) >= n or len(nodes) == prev_size:
                        break
                break

        return [max(node.keys, key=lambda kp: kp.response) for node in nodes]