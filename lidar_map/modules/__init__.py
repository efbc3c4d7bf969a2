"""
Processing modules: LiDAR data model and I/O, per-frame pipeline
operations, scan registration and map building.
"""
