"""
Publication layer: the latest-localization holder, the visualization map
and the drop-old worker that renders it off the estimator threads.
"""
import copy
import logging
import threading
from functools import partial
from typing import Callable, Dict, Optional, Tuple

from attrs import define, field

from .types.key import VariableId
from .types.localization import LatestLocalization
from .types.variables import Pose3D, Twist3D
from .utils.locks import TimedRLock

logger = logging.getLogger(__name__)


class LatestLocalizationHolder:
    """
    The most recent absolute pose. Readers and writers only take this
    holder's own mutex, never the solver lock.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._latest: Optional[LatestLocalization] = None

    def set(self, latest: LatestLocalization) -> None:
        with self._lock:
            self._latest = latest

    def get(self) -> Optional[LatestLocalization]:
        with self._lock:
            return self._latest

    def compare_and_set(self, expected: LatestLocalization, latest: LatestLocalization) -> bool:
        """Replaces the held value only if nobody has set a newer one meanwhile."""
        with self._lock:
            if self._latest is not expected:
                return False
            self._latest = latest
            return True


@define
class VizSnapshot:
    """Deep copy of the visualization map handed to renderers."""

    keyframe_poses: Dict[VariableId, Pose3D] = field(factory=dict)
    keyframe_twists: Dict[VariableId, Twist3D] = field(factory=dict)
    edges: Dict[int, Tuple[VariableId, VariableId]] = field(factory=dict)
    landmarks: Dict[VariableId, Tuple[float, float, float]] = field(factory=dict)


class VizMap:
    """
    Denormalized graph for rendering, kept apart from the solver state and
    guarded by the visualization-map lock.
    """

    def __init__(self, lock_timeout: float = 5.0):
        self.lock = TimedRLock("vizmap", lock_timeout)
        self._state = VizSnapshot()

    def set_keyframe(
        self, kf_id: VariableId, pose: Optional[Pose3D], twist: Optional[Twist3D] = None
    ) -> None:
        with self.lock.hold("vizmap"):
            if pose is not None:
                self._state.keyframe_poses[kf_id] = pose
            if twist is not None:
                self._state.keyframe_twists[kf_id] = twist

    def set_landmark(self, landmark_id: VariableId, position) -> None:
        with self.lock.hold("vizmap"):
            self._state.landmarks[landmark_id] = tuple(float(v) for v in position)

    def add_edge(self, factor_id: int, from_kf: VariableId, to_kf: VariableId) -> None:
        with self.lock.hold("vizmap"):
            self._state.edges[factor_id] = (from_kf, to_kf)

    def snapshot(self) -> VizSnapshot:
        with self.lock.hold("vizmap_snapshot"):
            return copy.deepcopy(self._state)


class DropOldWorker:
    """
    Single-slot mailbox served by one daemon thread.

    submit() never blocks: a job that has not started yet is replaced by
    the newer one and counted as dropped. Exceptions raised by a job are
    logged and the worker keeps serving.
    """

    def __init__(self, name: str = "aslam-viz"):
        self.name = name
        self.dropped = 0
        self.completed = 0
        self.failed = 0
        self._cond = threading.Condition()
        self._pending: Optional[Callable[[], None]] = None
        self._running = False
        self._stopping = False
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._thread.start()

    def submit(self, job: Callable, *args, **kwargs) -> bool:
        """
        Queues a job, replacing any queued job that has not started.

        Returns:
            False if the worker is shutting down and the job was refused
        """
        with self._cond:
            if self._stopping:
                return False
            if self._pending is not None:
                self.dropped += 1
                logger.debug(f"[{self.name}] dropped a stale job")
            self._pending = partial(job, *args, **kwargs)
            self._cond.notify_all()
        return True

    def _run(self) -> None:
        while True:
            with self._cond:
                while self._pending is None and not self._stopping:
                    self._cond.wait()
                if self._pending is None:
                    return
                job, self._pending = self._pending, None
                self._running = True
            try:
                job()
            except Exception as e:
                self.failed += 1
                logger.warning(f"[{self.name}] job failed: {e}", exc_info=True)
            with self._cond:
                self._running = False
                self.completed += 1
                self._cond.notify_all()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Blocks until no job is queued or running."""
        with self._cond:
            return self._cond.wait_for(
                lambda: self._pending is None and not self._running, timeout=timeout
            )

    def shutdown(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        """Stops accepting jobs; a queued job still runs before the thread exits."""
        with self._cond:
            self._stopping = True
            self._cond.notify_all()
        if wait:
            self._thread.join(timeout)

    @property
    def alive(self) -> bool:
        return self._thread.is_alive()


def render_vizmap_topview(snapshot: VizSnapshot, path: str) -> str:
    """
    Draws keyframes, keyframe-to-keyframe edges and landmarks in the XY
    plane and writes the figure to ``path``.
    """
    from matplotlib.backends.backend_agg import FigureCanvasAgg
    from matplotlib.figure import Figure

    fig = Figure(figsize=(8, 6))
    FigureCanvasAgg(fig)
    ax = fig.add_subplot(111)

    poses = snapshot.keyframe_poses
    for from_kf, to_kf in snapshot.edges.values():
        if from_kf in poses and to_kf in poses:
            (x1, y1, _), (x2, y2, _) = poses[from_kf].position, poses[to_kf].position
            ax.plot([x1, x2], [y1, y2], color=(1.0, 0.6, 0.0), linewidth=1.5, zorder=2)

    if poses:
        xs = [p.position[0] for p in poses.values()]
        ys = [p.position[1] for p in poses.values()]
        ax.scatter(xs, ys, s=40, c=[(0.1, 0.4, 1.0)], zorder=3)
        for kf_id, pose in poses.items():
            ax.text(pose.position[0], pose.position[1], str(kf_id), fontsize=8)

    if snapshot.landmarks:
        lx = [p[0] for p in snapshot.landmarks.values()]
        ly = [p[1] for p in snapshot.landmarks.values()]
        ax.scatter(lx, ly, s=15, marker="x", c=[(0.0, 0.7, 0.2)], zorder=3)

    ax.set_title(f"Keyframe graph ({len(poses)} keyframes, {len(snapshot.edges)} edges)")
    ax.set_xlabel("x [m]")
    ax.set_ylabel("y [m]")
    ax.set_aspect("equal", adjustable="datalim")
    ax.grid(True, alpha=0.2)
    fig.savefig(path)
    return path
