"""
Point cloud file access through Open3D.
"""
from .pcd import PcdDirectorySource, list_frame_files, load_pcd, save_to_pcd

__all__ = ["PcdDirectorySource", "list_frame_files", "load_pcd", "save_to_pcd"]
