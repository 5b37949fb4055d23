[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "visualslam"
version = "0.1.0"
description = "Pose estimation utilities for feature-based visual SLAM: EPnP, RANSAC PnP, settings parsing, trajectory export and a viewer stop/finish handshake."
requires-python = ">=3.10"
keywords = ["slam", "epnp", "pnp", "ransac", "computer-vision", "trajectory", "tum", "kitti"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Science/Research",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: Scientific/Engineering :: Image Recognition",
]
dependencies = [
    "numpy",
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["visualslam"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
