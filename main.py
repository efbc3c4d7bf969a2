"""
LiDAR Map Builder

Builds a global point cloud map from a directory of LiDAR frames (one
.pcd/.ply file per frame, processed in file name order) and writes it
to a point cloud file.

Environment Variables:
    LIDAR_MAP_LOG_LEVEL: Log level (default: INFO)
    LIDAR_MAP_LOG_FILE: Also log to this rotating file (default: unset)
    LIDAR_MAP_CONFIG: JSON file with the mapping configuration (default: built-in defaults)

CLI Usage:
    python main.py frames/ map.pcd

    # Custom configuration, first 100 frames only
    python main.py frames/ map.pcd --config mapping.json --max-frames 100
"""
import argparse
import json
import sys

from lidar_map.core.config import load_config, settings
from lidar_map.core.errors import LidarMapError
from lidar_map.core.logging_config import get_logger, setup_logging
from lidar_map.modules.lidar.io import PcdDirectorySource, save_to_pcd
from lidar_map.modules.mapping import MappingService

logger = get_logger("lidar_map.main")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=settings.PROJECT_NAME)
    parser.add_argument("frames", help="Directory of point cloud frames")
    parser.add_argument("output", help="Output map file (.pcd or .ply)")
    parser.add_argument("--config", default=None, help="Mapping configuration JSON file")
    parser.add_argument("--start", type=int, default=0, help="Index of the first frame file")
    parser.add_argument("--max-frames", type=int, default=None, help="Stop after this many frames")
    parser.add_argument("--binary", action="store_true", help="Write the map in binary encoding")
    parser.add_argument("--report", default=None, help="Write per-frame reports to this JSON file")
    parser.add_argument("--log-level", default=settings.LOG_LEVEL)
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level, settings.LOG_FILE)

    try:
        config = load_config(args.config)
        source = PcdDirectorySource(args.frames, start=args.start)
    except (LidarMapError, FileNotFoundError) as e:
        logger.error(str(e))
        return 2

    logger.info(f"Starting {settings.PROJECT_NAME} {settings.VERSION} on {len(source)} frames from {args.frames}")
    service = MappingService(config)
    try:
        reports = service.run(source, max_frames=args.max_frames)
    except KeyboardInterrupt:
        logger.warning("Interrupted, saving the map built so far")
        reports = service.reports
    finally:
        service.close()

    save_to_pcd(service.global_map.point_set, args.output, binary=args.binary)
    logger.info(f"Saved map with {len(service.global_map)} points to {args.output}")

    if args.report:
        with open(args.report, "w", encoding="utf-8") as f:
            json.dump([r.to_dict() for r in reports], f, indent=2)

    return 0 if any(r.ok for r in reports) else 1


if __name__ == "__main__":
    sys.exit(main())
