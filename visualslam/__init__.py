"""EPnP and RANSAC pose estimation, settings parsing, trajectory export and viewer control for visual SLAM."""

__version__ = "0.1.0"