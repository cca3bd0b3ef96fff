"""2D lidar SLAM: likelihood-field scan matching, occupancy grids, submaps and loop closure."""

__version__ = "0.1.0"