# slamcore

Building blocks for keyframe-based visual SLAM, written with numpy.

The package holds the map-side data structures of a SLAM system and an
ORB feature extractor. All classes are thread-safe in the sense that their
state is guarded by locks, so they can be shared between worker threads.

## Modules

- `slamcore.map` — `Map`, the registry of keyframes and map points. It
  tracks the largest keyframe id, a "big change" counter
  (`inform_new_big_change`, `last_big_change_idx`), a list of reference map
  points and the `key_frame_origins` list, and offers `point_creation_lock`
  and `map_update_lock` for callers that change the map as a whole.
- `slamcore.map_point` — `MapPoint`, a 3D landmark with its observations,
  mean viewing direction, scale-invariance distances and a representative
  descriptor (`compute_distinctive_descriptors` picks the observed
  descriptor with the least median Hamming distance to the others).
  `MapPoint.replace` merges one point into another; `predict_scale` gives
  the pyramid level a point should appear at for a given distance.
  `MapPoint.from_frame` builds a point seen in a plain frame.
  `descriptor_distance` returns the Hamming distance between two byte
  descriptors.
- `slamcore.key_frame` — `KeyFrame`, built from any frame-like object that
  carries the camera intrinsics, keypoints, depths, descriptors, scale
  data, feature grid and pose (see the class docstring for the attribute
  names). It keeps its pose and derived camera and stereo centres, the
  covisibility graph (`update_connections`, `best_covisibility_key_frames`,
  `covisibles_by_weight`, ...), the spanning tree and loop edges, and
  handles erasure with `set_bad_flag`, which reattaches children to the
  best-connected remaining parent. It also answers grid queries
  (`features_in_area`), back-projects stereo features (`unproject_stereo`)
  and computes the scene median depth.
- `slamcore.key_frame_database` — `KeyFrameDatabase`, an inverted file
  from vocabulary words to keyframes. `detect_loop_candidates` and
  `detect_relocalization_candidates` score keyframes sharing enough words,
  accumulate scores over covisible neighbours and keep those above 75 % of
  the best. The vocabulary object must support `len()` and
  `score(bow_a, bow_b)`.
- `slamcore.map_drawer` — `MapDrawer`, which turns a map into numpy
  geometry: map point positions (ordinary and reference), keyframe frustum
  segments, covisibility/spanning-tree/loop segments and the current camera
  frustum. `MapDrawer.from_settings` reads `Viewer.*` keys from a mapping;
  `camera_frustum_lines` gives the eight segments of a frustum in camera
  coordinates.
- `slamcore.orb_pattern` — `bit_pattern_31`, the 512 sampling points of
  the rBRIEF test pattern, and `circular_patch_umax`, the row half-widths
  of the circular orientation patch.
- `slamcore.orb_extractor` — `ORBExtractor`, which builds an image
  pyramid, detects FAST corners per cell, spreads them over the image with
  a quadtree (`ExtractorNode`, `distribute_oct_tree`), orients them by
  intensity centroid (`ic_angle`) and computes steered BRIEF descriptors
  (`compute_orb_descriptor`). `fast` is a standalone FAST-9 detector and
  `KeyPoint` the keypoint record.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Example

```python
import numpy as np
from slamcore.orb_extractor import ORBExtractor
from slamcore.map_point import descriptor_distance

image = (np.random.default_rng(0).random((240, 320)) * 255).astype(np.uint8)
extractor = ORBExtractor(500, 1.2, 8, 20, 7)
keypoints, descriptors = extractor(image)
print(len(keypoints), descriptors.shape)

if len(keypoints) >= 2:
    print(descriptor_distance(descriptors[0], descriptors[1]))
```

Each keypoint carries its position in level-0 pixels, octave, size, angle
in degrees and response; the descriptors are a `(len(keypoints), 32)`
array of `uint8`.

## What the package does not do

- It has no tracking, local-mapping or loop-closing workers: nothing here
  runs a SLAM pipeline over a video, triangulates new points, optimises
  poses or corrects loops. The classes are the data structures such
  workers would share.
- It has no bag-of-words vocabulary; `KeyFrameDatabase` and
  `KeyFrame.compute_bow` expect one to be supplied.
- It opens no window and draws nothing: `MapDrawer` only returns arrays
  for a renderer of your choice.
- It does not save or load maps.