"""Map, keyframe, keyframe database, map drawing geometry and ORB feature extraction for visual SLAM."""

__version__ = "0.1.0"