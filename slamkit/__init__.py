"""Visual SLAM building blocks: Lie groups, geometry, trajectories, point clouds, dense depth, pose graphs and a stereo map."""

__version__ = "0.1.0"