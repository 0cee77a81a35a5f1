"""
End-of-session output: trajectory export and the map snapshot.
"""
import csv
import logging
import os
from typing import Any, Dict, List, Tuple

import numpy as np
import yaml

from .trajectory import WholePath

logger = logging.getLogger(__name__)

TUM_SUFFIX = ".tum"
CSV_SUFFIX = ".csv"
MAP_FILENAME = "aslam_map.yaml"

CSV_HEADER = ["timestamp", "x", "y", "z", "qx", "qy", "qz", "qw", "vx", "vy", "vz", "wx", "wy", "wz"]


def _ensure_parent(path: str) -> None:
    parent = os.path.dirname(os.path.abspath(path))
    os.makedirs(parent, exist_ok=True)


def export_trajectory(path_prefix: str, whole_path: WholePath) -> Tuple[str, str]:
    """
    Writes ``<prefix>.tum`` (t x y z qx qy qz qw) and ``<prefix>.csv``
    (same columns plus twist, empty where unknown).

    Returns:
        (tum path, csv path)
    """
    tum_path = path_prefix + TUM_SUFFIX
    csv_path = path_prefix + CSV_SUFFIX
    _ensure_parent(tum_path)

    rows = [
        [t, *pose.position, *pose.orientation] for t, pose in whole_path.poses.items()
    ]
    data = np.array(rows, dtype=float).reshape(-1, 8)
    np.savetxt(tum_path, data, fmt="%.9f", delimiter=" ")

    with open(csv_path, "w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(CSV_HEADER)
        for t, pose in whole_path.poses.items():
            twist = whole_path.twists.get(t)
            twist_cols = [*twist.linear, *twist.angular] if twist is not None else [""] * 6
            writer.writerow([t, *pose.position, *pose.orientation, *twist_cols])

    logger.info(f"[export_trajectory] {len(rows)} pose(s) written to {tum_path} and {csv_path}")
    return tum_path, csv_path


def load_tum_trajectory(path: str) -> np.ndarray:
    """Reads a TUM file back as an (N, 8) array."""
    return np.loadtxt(path, ndmin=2).reshape(-1, 8)


def save_map(directory: str, document: Dict[str, Any], filename: str = MAP_FILENAME) -> str:
    """
    Writes the map snapshot (keyframes, landmarks, edges) as YAML.

    Returns:
        the written path
    """
    os.makedirs(directory, exist_ok=True)
    path = os.path.join(directory, filename)
    with open(path, "w") as f:
        yaml.safe_dump(document, f, sort_keys=False)
    counts = {k: len(v) for k, v in document.items() if isinstance(v, list)}
    logger.info(f"[save_map] map written to {path}: {counts}")
    return path


def load_map(path: str) -> Dict[str, List[Dict[str, Any]]]:
    with open(path, "r") as f:
        return yaml.safe_load(f)
