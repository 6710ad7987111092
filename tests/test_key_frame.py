import math
from types import SimpleNamespace

import numpy as np
import pytest

from slamcore.key_frame import KeyFrame
from slamcore.map import Map
from slamcore.map_point import MapPoint

WIDTH, HEIGHT, COLS, ROWS = 640.0, 480.0, 8, 6


def make_frame(points=None, depths=None, b=0.1, tcw=None, fx=500.0, cx=320.0, cy=240.0):
    if points is None:
        points = [(20.0 + 30.0 * i, 20.0 + 20.0 * i) for i in range(20)]
    n = len(points)
    keys = [SimpleNamespace(pt=p, octave=0) for p in points]
    gw, gh = COLS / WIDTH, ROWS / HEIGHT
    grid = [[[] for _ in range(ROWS)] for _ in range(COLS)]
    for idx, (x, y) in enumerate(points):
        grid[int(x * gw)][int(y * gh)].append(idx)
    return SimpleNamespace(
        id=0,
        fx=fx, fy=fx, cx=cx, cy=cy, invfx=1 / fx, invfy=1 / fx,
        bf=b * fx, b=b, th_depth=35 * b,
        keys=keys, keys_un=keys,
        right_coords=[-1.0] * n,
        depths=depths if depths is not None else [-1.0] * n,
        descriptors=np.zeros((n, 32), dtype=np.uint8),
        scale_levels=8, scale_factor=1.2, log_scale_factor=math.log(1.2),
        scale_factors=[1.2**i for i in range(8)],
        level_sigma2=[1.44**i for i in range(8)],
        inv_level_sigma2=[1.44**-i for i in range(8)],
        min_x=0.0, min_y=0.0, max_x=WIDTH, max_y=HEIGHT,
        K=np.array([[fx, 0, cx], [0, fx, cy], [0, 0, 1]]),
        grid=grid,
        grid_element_width_inv=gw, grid_element_height_inv=gh,
        tcw=np.eye(4) if tcw is None else tcw,
    )


def make_kf(kf_id, map_=None, database=None, **kwargs):
    kf = KeyFrame(make_frame(**kwargs), map_, database)
    kf.id = kf_id
    return kf


class RecordingDatabase:
    def __init__(self):
        self.erased = []

    def erase(self, key_frame):
        self.erased.append(key_frame)


def share_points(map_, count, *key_frames, offset=0):
    points = []
    for i in range(count):
        point = MapPoint([0.0, 0.0, 2.0], key_frames[0], map_)
        for kf in key_frames:
            point.add_observation(kf, i + offset)
            kf.add_map_point(point, i + offset)
        points.append(point)
    return points


def test_pose_inverse_and_centres():
    r = np.array([[0.0, -1.0, 0.0], [1.0, 0.0, 0.0], [0.0, 0.0, 1.0]])
    t = np.array([1.0, 2.0, 3.0])
    tcw = np.eye(4)
    tcw[:3, :3] = r
    tcw[:3, 3] = t
    kf = make_kf(5, tcw=tcw, b=0.4)
    assert np.allclose(kf.pose_inverse() @ kf.pose(), np.eye(4))
    assert np.allclose(kf.rotation(), r)
    assert np.allclose(kf.translation(), t)
    centre = np.append(kf.camera_center(), 1.0)
    assert np.allclose(kf.pose() @ centre, [0, 0, 0, 1])
    stereo = np.append(kf.stereo_center(), 1.0)
    assert np.allclose(kf.pose() @ stereo, [0.2, 0, 0, 1])


def test_pose_returns_copies():
    kf = make_kf(5)
    pose = kf.pose()
    pose[0, 3] = 99.0
    assert kf.pose()[0, 3] == 0.0


def test_connections_are_ordered_by_weight():
    kf = make_kf(1)
    a, b, c = make_kf(2), make_kf(3), make_kf(4)
    kf.add_connection(a, 10)
    kf.add_connection(b, 30)
    kf.add_connection(c, 20)
    assert kf.vector_covisible_key_frames() == [b, c, a]
    assert kf.best_covisibility_key_frames(2) == [b, c]
    assert kf.best_covisibility_key_frames(10) == [b, c, a]
    assert kf.weight(c) == 20
    assert kf.weight(make_kf(9)) == 0
    assert kf.connected_key_frames() == {a, b, c}


def test_add_connection_updates_weight():
    kf, a, b = make_kf(1), make_kf(2), make_kf(3)
    kf.add_connection(a, 10)
    kf.add_connection(b, 20)
    kf.add_connection(a, 40)
    assert kf.vector_covisible_key_frames() == [a, b]
    assert kf.weight(a) == 40


def test_covisibles_by_weight():
    kf, a, b = make_kf(1), make_kf(2), make_kf(3)
    assert kf.covisibles_by_weight(5) == []
    kf.add_connection(a, 20)
    kf.add_connection(b, 10)
    assert kf.covisibles_by_weight(15) == [a]
    assert kf.covisibles_by_weight(20) == [a]
    assert kf.covisibles_by_weight(5) == []


def test_erase_connection():
    kf, a, b = make_kf(1), make_kf(2), make_kf(3)
    kf.add_connection(a, 20)
    kf.add_connection(b, 10)
    kf.erase_connection(a)
    assert kf.vector_covisible_key_frames() == [b]
    assert kf.weight(a) == 0


def test_map_point_association():
    map_ = Map()
    kf = make_kf(1)
    point = MapPoint([0, 0, 1], kf, map_)
    point.add_observation(kf, 3)
    kf.add_map_point(point, 3)
    assert kf.map_point(3) is point
    assert kf.map_points() == {point}
    kf.erase_map_point(point)
    assert kf.map_point(3) is None
    kf.replace_map_point_match(4, point)
    assert kf.map_point_matches()[4] is point
    kf.erase_map_point_match(4)
    assert all(p is None for p in kf.map_point_matches())


def test_map_points_skip_bad():
    map_ = Map()
    kf = make_kf(1)
    good = MapPoint([0, 0, 1], kf, map_)
    bad = MapPoint([0, 0, 1], kf, map_)
    kf.add_map_point(good, 0)
    kf.add_map_point(bad, 1)
    bad.set_bad_flag()
    assert kf.map_points() == {good}


def test_tracked_map_points():
    map_ = Map()
    kf, other = make_kf(1), make_kf(2)
    twice = share_points(map_, 2, kf, other)
    once = MapPoint([0, 0, 1], kf, map_)
    once.add_observation(kf, 5)
    kf.add_map_point(once, 5)
    assert len(twice) == 2
    assert kf.tracked_map_points(0) == 3
    assert kf.tracked_map_points(2) == 2


def test_update_connections_strong_link_sets_parent():
    map_ = Map()
    a, b = make_kf(10), make_kf(11)
    share_points(map_, 16, a, b)
    b.update_connections()
    assert b.vector_covisible_key_frames() == [a]
    assert b.weight(a) == 16
    assert a.weight(b) == 16
    assert b.parent() is a
    assert a.has_child(b)
    assert a.children() == {b}


def test_update_connections_weak_links_keep_best():
    map_ = Map()
    a, b, c = make_kf(10), make_kf(11), make_kf(12)
    share_points(map_, 5, b, a)
    share_points(map_, 3, b, c, offset=5)
    b.update_connections()
    assert b.vector_covisible_key_frames() == [a]
    assert b.weight(c) == 3
    assert a.weight(b) == 5
    assert c.weight(b) == 0


def test_update_connections_id_zero_has_no_parent():
    map_ = Map()
    a, b = make_kf(0), make_kf(11)
    share_points(map_, 16, a, b)
    a.update_connections()
    assert a.parent() is None
    assert a.vector_covisible_key_frames() == [b]


def test_set_bad_flag_reassigns_children():
    map_ = Map()
    database = RecordingDatabase()
    p = make_kf(20, map_)
    k = make_kf(21, map_, database)
    c = make_kf(22, map_)
    for kf in (p, k, c):
        map_.add_key_frame(kf)
    k.change_parent(p)
    c.change_parent(k)
    for x, y, w in ((p, k, 30), (c, p, 25), (c, k, 40)):
        x.add_connection(y, w)
        y.add_connection(x, w)
    k.set_bad_flag()
    assert k.is_bad()
    assert c.parent() is p
    assert p.has_child(c)
    assert not p.has_child(k)
    assert k not in map_.key_frames()
    assert database.erased == [k]
    assert p.weight(k) == 0
    assert c.vector_covisible_key_frames() == [p]
    assert np.allclose(k.tcp, np.eye(4))


def test_set_bad_flag_ignored_for_first_key_frame():
    kf = make_kf(0)
    kf.set_bad_flag()
    assert not kf.is_bad()


def test_erase_deferred_while_not_erase():
    parent = make_kf(30)
    kf = make_kf(31)
    kf.change_parent(parent)
    kf.set_not_erase()
    kf.set_bad_flag()
    assert not kf.is_bad()
    kf.set_erase()
    assert kf.is_bad()
    assert not parent.has_child(kf)


def test_loop_edge_keeps_key_frame():
    parent, other = make_kf(40), make_kf(42)
    kf = make_kf(41)
    kf.change_parent(parent)
    kf.add_loop_edge(other)
    assert kf.loop_edges() == {other}
    kf.set_bad_flag()
    kf.set_erase()
    assert not kf.is_bad()


def test_erase_child():
    a, b = make_kf(1), make_kf(2)
    a.add_child(b)
    assert a.has_child(b)
    a.erase_child(b)
    assert not a.has_child(b)


def test_features_in_area():
    points = [(100.0, 100.0), (105.0, 100.0), (300.0, 300.0), (100.0, 115.0)]
    kf = make_kf(1, points=points)
    assert sorted(kf.features_in_area(100.0, 100.0, 10.0)) == [0, 1]
    assert kf.features_in_area(300.0, 300.0, 1.0) == [2]
    assert kf.features_in_area(5000.0, 100.0, 10.0) == []
    assert kf.features_in_area(-500.0, 100.0, 10.0) == []


def test_is_in_image():
    kf = make_kf(1)
    assert kf.is_in_image(0.0, 0.0)
    assert not kf.is_in_image(WIDTH, 10.0)
    assert not kf.is_in_image(10.0, -1.0)


def test_unproject_stereo():
    points = [(320.0, 240.0), (820.0, 240.0 - 0.0)]
    kf = make_kf(1, points=[(320.0, 240.0), (400.0, 240.0)], depths=[2.0, -1.0])
    assert np.allclose(kf.unproject_stereo(0), [0.0, 0.0, 2.0])
    assert kf.unproject_stereo(1) is None
    assert len(points) == 2


def test_unproject_stereo_reprojects_to_pixel():
    tcw = np.eye(4)
    tcw[:3, 3] = [0.5, -0.2, 1.0]
    kf = make_kf(1, points=[(400.0, 200.0)], depths=[3.0], tcw=tcw)
    world = kf.unproject_stereo(0)
    cam = kf.rotation() @ world + kf.translation()
    assert cam[2] == pytest.approx(3.0)
    assert kf.fx * cam[0] / cam[2] + kf.cx == pytest.approx(400.0)
    assert kf.fy * cam[1] / cam[2] + kf.cy == pytest.approx(200.0)


def test_compute_scene_median_depth():
    map_ = Map()
    kf = make_kf(1)
    for idx, z in enumerate([3.0, 1.0, 2.0]):
        point = MapPoint([0.0, 0.0, z], kf, map_)
        kf.add_map_point(point, idx)
    assert kf.compute_scene_median_depth(2) == pytest.approx(2.0)
    assert kf.compute_scene_median_depth(1) == pytest.approx(3.0)


def test_compute_scene_median_depth_without_points():
    kf = make_kf(1)
    with pytest.raises(ValueError):
        kf.compute_scene_median_depth(2)


def test_compute_bow_uses_vocabulary():
    class Vocabulary:
        def __init__(self):
            self.levels = None

        def transform(self, descriptors, levels_up):
            self.levels = levels_up
            return {7: 0.5}, {1: [0]}

    kf = make_kf(1)
    kf.vocabulary = Vocabulary()
    kf.compute_bow()
    assert kf.bow_vec == {7: 0.5}
    assert kf.feat_vec == {1: [0]}
    assert kf.vocabulary.levels == 4


def test_compute_bow_without_vocabulary():
    kf = make_kf(1)
    with pytest.raises(ValueError):
        kf.compute_bow()