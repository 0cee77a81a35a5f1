"""
Orchestrator-facing facade of the back-end.

Wires the identifier registry, variable model, incorporation layer,
incremental estimator, trajectory history and publication layer together
and exposes the calls an external orchestrator makes.
"""
import logging
from typing import Any, Callable, Dict, Optional

import attrs
import numpy as np
from functools import partial

from .backends.gtsam.conversions import (
    LANDMARK_CHAR,
    KeyAllocator,
    get_pose3_from_pose3d,
    get_pose3d_from_pose3,
    get_stereo_calibration,
    get_twist3d_from_velocity,
)
from .config import BackendParameters
from .errors import (
    InvalidTimestamp,
    NotFound,
    SolveFailure,
    UnknownVariable,
    UsageFault,
)
from .estimator import IncrementalEstimator, make_solver
from .incorporation import FactorIncorporationLayer
from .persistence import export_trajectory, save_map
from .publication import (
    DropOldWorker,
    LatestLocalizationHolder,
    VizMap,
    VizSnapshot,
    render_vizmap_topview,
)
from .registry import IdentifierRegistry
from .trajectory import (
    TrajectoryHistory,
    WholePath,
    find_closest_keyframe_in_time,
    reconstruct_whole_path,
)
from .types.enums import VariableKind
from .types.factors import CameraIntrinsics
from .types.key import IdAllocator, VariableId
from .types.localization import LatestLocalization, LocalizationUpdate
from .types.variables import Keyframe, Pose3D, Twist3D
from .values import PublishedEstimate
from .variable_model import VariableModel

logger = logging.getLogger(__name__)


class AslamBackend:
    """
    Incremental keyframe SLAM back-end.

    Producer threads call add_keyframe/add_factor, an orchestrator calls
    commit or spin_once, and readers query the published estimate, the
    latest localization or the reconstructed trajectory concurrently.
    """

    def __init__(
        self,
        params: Optional[BackendParameters] = None,
        renderer: Optional[Callable[[VizSnapshot], Any]] = None,
    ):
        """
        Args:
            params: back-end parameters (defaults if omitted)
            renderer: called with a VizSnapshot on the visualization worker;
                defaults to a top-view PNG when visualization_output is set
        """
        self.params = params if params is not None else BackendParameters()
        self._ids = IdAllocator()
        self._keys = KeyAllocator()
        self.registry = IdentifierRegistry(self.params.lock_timeout)
        self.variable_model = VariableModel(self.params, self._keys)
        self.estimator = IncrementalEstimator(
            self.variable_model,
            make_solver(self.params),
            lock_timeout=self.params.lock_timeout,
            enable_diagnostics=self.params.enable_diagnostics,
        )

        self.keyframes: Dict[VariableId, Keyframe] = {}
        self._time2kf: Dict[float, VariableId] = {}
        self.root_kf_id: Optional[VariableId] = None
        self.last_created_kf_id: Optional[VariableId] = None
        self.former_last_created_kf_id: Optional[VariableId] = None
        self._explicit_landmarks: Dict[VariableId, int] = {}

        self.incorporation = FactorIncorporationLayer(
            self.params,
            self.registry,
            self.estimator,
            self.variable_model,
            self._ids,
            self._keys,
            self.keyframes,
        )

        self.trajectory = TrajectoryHistory(record_all=bool(self.params.save_trajectory_file_prefix))
        self._latest = LatestLocalizationHolder()
        self.vizmap = VizMap(self.params.lock_timeout)

        if renderer is None and self.params.visualization_output:
            renderer = partial(render_vizmap_topview, path=self.params.visualization_output)
        self._renderer = renderer
        self._worker: Optional[DropOldWorker] = None
        if self.params.enable_visualization:
            if self._renderer is None:
                logger.warning("[init] visualization enabled without a renderer or output path")
            self._worker = DropOldWorker()
        self._quit = False

        logger.info(
            f"[init] state_vector={self.params.state_vector.name} "
            f"solver={'isam2' if self.params.use_incremental_solver else 'levenberg_marquardt'}"
        )

    @classmethod
    def from_yaml(cls, path: str, **kwargs) -> "AslamBackend":
        return cls(BackendParameters.from_yaml(path), **kwargs)

    # ------------------------------------------------------------------
    # graph building
    # ------------------------------------------------------------------

    def add_keyframe(
        self, timestamp: float, is_first: bool = False, initial_pose: Optional[Pose3D] = None
    ) -> VariableId:
        """
        Creates a keyframe. The first keyframe of a session becomes root and
        is anchored by an absolute prior at ``initial_pose`` (identity if
        omitted); later keyframes only receive an initial guess.

        Raises:
            InvalidTimestamp: timestamp not strictly after the last keyframe
            UsageFault: is_first requested while a root already exists
        """
        timestamp = float(timestamp)
        if not np.isfinite(timestamp):
            raise InvalidTimestamp(f"keyframe timestamp must be finite, got {timestamp}")
        if initial_pose is not None and not isinstance(initial_pose, Pose3D):
            raise TypeError(f"initial_pose must be a Pose3D, got {type(initial_pose).__name__}")

        with self.estimator.lock.hold("add_keyframe"):
            if self.root_kf_id is None:
                keyframe = self._add_keyframe_root(timestamp, initial_pose)
                self.root_kf_id = keyframe.id
            else:
                if is_first:
                    raise UsageFault(f"root keyframe {self.root_kf_id} already exists")
                last = self.keyframes[self.last_created_kf_id].timestamp
                if timestamp <= last:
                    raise InvalidTimestamp(
                        f"keyframe timestamp {timestamp} is not after the last one ({last})"
                    )
                keyframe = self._add_keyframe_regular(timestamp, initial_pose)
            self.keyframes[keyframe.id] = keyframe
            self._time2kf[timestamp] = keyframe.id
            self.former_last_created_kf_id = self.last_created_kf_id
            self.last_created_kf_id = keyframe.id

        self.vizmap.set_keyframe(keyframe.id, initial_pose if keyframe.is_root else None)
        logger.info(
            f"[add_keyframe] {keyframe.id} at t={timestamp:.6f}"
            f"{' (root)' if keyframe.is_root else ''}"
        )
        return keyframe.id

    def _add_keyframe_root(self, timestamp: float, initial_pose: Optional[Pose3D]) -> Keyframe:
        pose3d = initial_pose if initial_pose is not None else Pose3D.identity()
        keys = self.variable_model.allocate_keyframe_keys()
        kf_id = self._ids.allocate(VariableKind.KEYFRAME)
        self.registry.register(kf_id, keys.as_tuple())
        self.estimator.track_keyframe(keys)

        pose = get_pose3_from_pose3d(pose3d)
        self.estimator.insert_values(self.variable_model.initial_values(keys, pose))
        for prior in self.variable_model.root_priors(keys, pose):
            self.estimator.add_factor(prior)
        return Keyframe(kf_id, timestamp, keys, is_root=True, initial_pose=pose3d)

    def _add_keyframe_regular(self, timestamp: float, initial_pose: Optional[Pose3D]) -> Keyframe:
        keys = self.variable_model.allocate_keyframe_keys()
        kf_id = self._ids.allocate(VariableKind.KEYFRAME)
        self.registry.register(kf_id, keys.as_tuple())
        self.estimator.track_keyframe(keys)
        if initial_pose is not None:
            self.estimator.insert_values(
                self.variable_model.initial_values(keys, get_pose3_from_pose3d(initial_pose))
            )
        return Keyframe(kf_id, timestamp, keys, is_root=False, initial_pose=initial_pose)

    def create_stereo_camera(
        self, left: CameraIntrinsics, right: CameraIntrinsics, baseline: float
    ) -> VariableId:
        """
        Registers a rectified stereo calibration for stereo factors.

        Raises:
            UsageFault: the pair is not rectified or the baseline is not positive
        """
        try:
            calibration = get_stereo_calibration(left, right, baseline)
        except ValueError as e:
            raise UsageFault(str(e)) from e
        camera_id = self._ids.allocate(VariableKind.CAMERA)
        with self.estimator.lock.hold("create_stereo_camera"):
            self.incorporation.register_camera(camera_id, calibration)
        logger.info(f"[create_stereo_camera] {camera_id}: fx={left.fx} baseline={baseline}")
        return camera_id

    def create_landmark(self, initial_position=None) -> VariableId:
        """
        Creates an explicit landmark for single-view stereo factors. Its
        solver variable joins the graph with the first factor that
        references it; without ``initial_position`` it is triangulated
        from that first observation.
        """
        landmark_id = self._ids.allocate(VariableKind.LANDMARK)
        key = self._keys.allocate(LANDMARK_CHAR)
        self.registry.register(landmark_id, (key,))
        with self.estimator.lock.hold("create_landmark"):
            self.incorporation.register_landmark(landmark_id, initial_position)
            self._explicit_landmarks[landmark_id] = key
        return landmark_id

    def add_factor(self, factor) -> int:
        """
        Incorporates a factor into the pending buffer.

        Returns:
            the factor id (a repeated smart feature keeps its factor id)

        Raises:
            UnknownVariable, GapTooLarge, UnsupportedFactor, UsageFault
        """
        record = self.incorporation.incorporate(factor)
        pair = record.keyframe_pair
        if pair is not None:
            self.vizmap.add_edge(record.factor_id, *pair)
        return record.factor_id

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    def commit(self) -> bool:
        """
        Runs the solver on the pending buffer and publishes the result.

        Returns:
            True if a solve ran

        Raises:
            SolveFailure: nothing was published; the pending buffer is kept
        """
        # refresh under the solver lock so publications land in commit order
        with self.estimator.lock.hold("commit"):
            ran = self.estimator.commit()
            if ran:
                self._refresh_publication(self.estimator.published)
        return ran

    def spin_once(self) -> bool:
        """One orchestrator tick: commit, then hand a snapshot to the visualization worker."""
        ran = self.commit()
        if self._worker is not None and self._renderer is not None:
            self._worker.submit(self._renderer, self.vizmap.snapshot())
        return ran

    def on_quit(self) -> None:
        """
        Final commit, trajectory export, map snapshot and worker shutdown.
        Idempotent. A failing final commit is raised after the outputs of
        the last good estimate have been written.
        """
        if self._quit:
            return
        self._quit = True
        failure: Optional[SolveFailure] = None
        try:
            self.commit()
        except SolveFailure as e:
            logger.error(f"[on_quit] final commit failed: {e}")
            failure = e
        try:
            if self.params.save_trajectory_file_prefix:
                export_trajectory(
                    self.params.save_trajectory_file_prefix, self.reconstruct_trajectory()
                )
            if self.params.save_map_at_end:
                save_map(self.params.map_directory, self.map_document())
        finally:
            if self._worker is not None:
                self._worker.shutdown(wait=True, timeout=self.params.lock_timeout)
        if failure is not None:
            raise failure

    def _refresh_publication(self, published: PublishedEstimate) -> None:
        for kf_id, keyframe in list(self.keyframes.items()):
            pose = self._published_pose(published, keyframe)
            if pose is not None:
                self.vizmap.set_keyframe(kf_id, pose, self._published_twist(published, keyframe))
        for landmark_id, key in list(self._explicit_landmarks.items()):
            point = published.point(key)
            if point is not None:
                self.vizmap.set_landmark(landmark_id, point)

        latest = self._latest.get()
        if latest is not None:
            anchor = self._published_pose(published, self.keyframes[latest.reference_kf])
            if anchor is not None:
                refreshed = attrs.evolve(latest, pose=anchor.compose(latest.relative_pose))
                self._latest.compare_and_set(latest, refreshed)

    # ------------------------------------------------------------------
    # localization and trajectory
    # ------------------------------------------------------------------

    def advertise_updated_localization(self, update: LocalizationUpdate) -> None:
        """
        Delivers a pose relative to ``update.reference_kf``. It becomes the
        latest localization and is stored in the trajectory history.

        Raises:
            UnknownVariable: the reference keyframe does not exist
        """
        keyframe = self.keyframes.get(update.reference_kf)
        if keyframe is None:
            raise UnknownVariable(f"reference keyframe {update.reference_kf} is not registered")
        anchor = self.estimator.pose_value(keyframe.keys.pose)
        if anchor is None:
            logger.warning(
                f"[advertise_updated_localization] {update.reference_kf} has no estimate yet; "
                f"treating the relative pose as absolute"
            )
            absolute = update.pose
        else:
            absolute = get_pose3d_from_pose3(anchor).compose(update.pose)

        self.trajectory.record(update, is_keyframe_time=update.timestamp in self._time2kf)
        self._latest.set(
            LatestLocalization(
                update.timestamp, update.reference_kf, update.pose, absolute, update.twist
            )
        )

    def latest_localization(self) -> Optional[LatestLocalization]:
        """Most recent absolute pose; never waits on the solver."""
        return self._latest.get()

    def reconstruct_trajectory(self) -> WholePath:
        """
        Re-expresses the trajectory history against the current published
        keyframe estimate. Pure read; safe to call during a commit.
        """
        published = self.estimator.published
        return reconstruct_whole_path(
            dict(self.keyframes),
            self.trajectory.entries(),
            partial(self._published_pose, published),
            partial(self._published_twist, published),
        )

    def find_closest_keyframe_in_time(self, timestamp: float) -> Optional[VariableId]:
        return find_closest_keyframe_in_time(dict(self._time2kf), timestamp)

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    @property
    def published_estimate(self) -> PublishedEstimate:
        return self.estimator.published

    def keyframe(self, kf_id: VariableId) -> Keyframe:
        try:
            return self.keyframes[kf_id]
        except KeyError:
            raise UnknownVariable(f"keyframe {kf_id} is not registered") from None

    def keyframe_pose(self, kf_id: VariableId) -> Optional[Pose3D]:
        """Published pose of a keyframe, None until it has been solved."""
        return self._published_pose(self.estimator.published, self.keyframe(kf_id))

    def keyframe_twist(self, kf_id: VariableId) -> Optional[Twist3D]:
        return self._published_twist(self.estimator.published, self.keyframe(kf_id))

    def keyframe_has_value(self, kf_id: VariableId) -> bool:
        return self.estimator.has_published_value(self.keyframe(kf_id).keys.pose)

    def landmark_position(self, landmark_id: VariableId) -> Optional[np.ndarray]:
        """
        Published position of an explicit landmark; None until solved and
        always None for landmarks seen only by smart factors.
        """
        key = self._explicit_landmarks.get(landmark_id)
        if key is None:
            try:
                self.incorporation.trimap.handle_of_caller(landmark_id)
            except NotFound:
                raise UnknownVariable(f"landmark {landmark_id} is not registered") from None
            return None
        return self.estimator.published.point(key)

    @property
    def factor_count(self) -> int:
        return len(self.incorporation.records)

    @property
    def smart_factor_count(self) -> int:
        return sum(1 for s in self.incorporation.smart_landmarks.values() if s.materialized)

    def lock_slam(self) -> None:
        """Holds the solver lock across several calls (reentrant)."""
        self.estimator.lock.acquire("lock_slam")

    def unlock_slam(self) -> None:
        self.estimator.lock.release()

    def map_document(self) -> Dict[str, Any]:
        """The map snapshot written at the end of the session."""
        published = self.estimator.published
        keyframes = []
        for kf_id, keyframe in sorted(self.keyframes.items()):
            entry: Dict[str, Any] = {
                "id": str(kf_id),
                "timestamp": keyframe.timestamp,
                "is_root": keyframe.is_root,
            }
            pose = self._published_pose(published, keyframe)
            if pose is not None:
                entry["position"] = list(pose.position)
                entry["orientation"] = list(pose.orientation)
            twist = self._published_twist(published, keyframe)
            if twist is not None:
                entry["velocity"] = list(twist.linear)
            keyframes.append(entry)

        landmarks = []
        for landmark_id, key in sorted(self._explicit_landmarks.items()):
            point = published.point(key)
            if point is not None:
                landmarks.append({"id": str(landmark_id), "position": [float(v) for v in point]})

        smart_landmarks = [
            {
                "id": str(state.landmark_id),
                "feature_id": state.feature_id,
                "observations": [str(kf_id) for kf_id in state.observing_keyframes],
            }
            for state in self.incorporation.smart_landmarks.values()
        ]

        edges = [
            {
                "factor_id": record.factor_id,
                "kind": record.kind.value,
                "from": str(record.keyframe_pair[0]),
                "to": str(record.keyframe_pair[1]),
            }
            for record in self.incorporation.records
            if record.keyframe_pair is not None
        ]
        return {
            "keyframes": keyframes,
            "landmarks": landmarks,
            "smart_landmarks": smart_landmarks,
            "edges": edges,
        }

    @staticmethod
    def _published_pose(published: PublishedEstimate, keyframe: Keyframe) -> Optional[Pose3D]:
        pose = published.pose(keyframe.keys.pose)
        return get_pose3d_from_pose3(pose) if pose is not None else None

    @staticmethod
    def _published_twist(published: PublishedEstimate, keyframe: Keyframe) -> Optional[Twist3D]:
        if keyframe.keys.velocity is None:
            return None
        velocity = published.vector(keyframe.keys.velocity)
        return get_twist3d_from_velocity(velocity) if velocity is not None else None
