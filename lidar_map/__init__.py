"""
Incremental LiDAR map building: frame preprocessing, point-to-plane ICP
and voxel map fusion.
"""
__version__ = "0.1.0"
