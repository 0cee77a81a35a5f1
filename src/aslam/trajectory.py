"""
Trajectory history and reconstruction.

Delivered poses are stored relative to their anchor keyframe, so that
optimization revising a keyframe never rewrites history: absolute poses are
recomposed from the current published keyframe estimate on demand.
"""
import logging
import threading
from collections import OrderedDict
from typing import Callable, Dict, List, Mapping, Optional

from attrs import define, field

from .types.key import VariableId
from .types.localization import LocalizationUpdate
from .types.variables import Keyframe, Pose3D, Twist3D

logger = logging.getLogger(__name__)


@define
class WholePath:
    """
    Reconstructed trajectory, ordered by timestamp.
    """

    poses: "OrderedDict[float, Pose3D]" = field(factory=OrderedDict)
    twists: Dict[float, Twist3D] = field(factory=dict)
    id2time: Dict[VariableId, float] = field(factory=dict)
    time2id: Dict[float, VariableId] = field(factory=dict)

    def __len__(self) -> int:
        return len(self.poses)

    def timestamps(self) -> List[float]:
        return list(self.poses)


class TrajectoryHistory:
    """
    Append-only record of delivered localization updates, keyed by
    timestamp. Guarded by its own small lock; never touches the solver.
    """

    def __init__(self, record_all: bool = False):
        self.record_all = record_all
        self._entries: Dict[float, LocalizationUpdate] = {}
        self._lock = threading.Lock()

    def record(self, update: LocalizationUpdate, is_keyframe_time: bool = False) -> bool:
        """
        Stores an update. Non-keyframe samples are kept only when
        ``record_all`` is set.

        Returns:
            True if the update was stored
        """
        if not (self.record_all or is_keyframe_time):
            return False
        with self._lock:
            self._entries[update.timestamp] = update
        return True

    def entries(self) -> List[LocalizationUpdate]:
        """Snapshot of the history, ordered by timestamp."""
        with self._lock:
            return [self._entries[t] for t in sorted(self._entries)]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def reconstruct_whole_path(
    keyframes: Mapping[VariableId, Keyframe],
    entries: List[LocalizationUpdate],
    keyframe_pose: Callable[[Keyframe], Optional[Pose3D]],
    keyframe_twist: Callable[[Keyframe], Optional[Twist3D]],
) -> WholePath:
    """
    Composes every history entry with the current pose of its anchor
    keyframe.

    Args:
        keyframes: keyframe table snapshot
        entries: history snapshot, ordered by timestamp
        keyframe_pose: current published pose of a keyframe, None if unsolved
        keyframe_twist: current published twist of a keyframe, None if none

    Returns:
        the whole path; entries anchored to an unsolved keyframe are skipped
    """
    samples: Dict[float, Pose3D] = {}
    twists: Dict[float, Twist3D] = {}
    path = WholePath()

    anchor_poses: Dict[VariableId, Optional[Pose3D]] = {}
    for kf in keyframes.values():
        pose = keyframe_pose(kf)
        anchor_poses[kf.id] = pose
        if pose is None:
            continue
        samples[kf.timestamp] = pose
        path.id2time[kf.id] = kf.timestamp
        path.time2id[kf.timestamp] = kf.id
        twist = keyframe_twist(kf)
        if twist is not None:
            twists[kf.timestamp] = twist

    skipped = 0
    for entry in entries:
        if entry.timestamp in path.time2id:
            if entry.twist is not None and entry.timestamp not in twists:
                twists[entry.timestamp] = entry.twist
            continue
        anchor = anchor_poses.get(entry.reference_kf)
        if anchor is None:
            skipped += 1
            continue
        samples[entry.timestamp] = anchor.compose(entry.pose)
        if entry.twist is not None:
            twists[entry.timestamp] = entry.twist
    if skipped:
        logger.debug(f"[reconstruct_trajectory] {skipped} sample(s) anchored to unsolved keyframes")

    for t in sorted(samples):
        path.poses[t] = samples[t]
    path.twists = {t: twists[t] for t in sorted(twists)}
    return path


def find_closest_keyframe_in_time(
    time2kf: Mapping[float, VariableId], timestamp: float
) -> Optional[VariableId]:
    """The keyframe whose timestamp is closest to ``timestamp`` (None if there are none)."""
    if not time2kf:
        return None
    closest = min(time2kf, key=lambda t: abs(t - timestamp))
    return time2kf[closest]
