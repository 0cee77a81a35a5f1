"""
Factor incorporation: translates caller factors (on caller ids) into GTSAM
factors and initial values (on internal keys) in the pending buffer.

Every handler validates and builds everything first, then mutates. An
invalid factor leaves the pending buffer, the records and the registry
untouched.
"""
import itertools
import logging
from typing import Callable, Dict, List, Mapping, Optional, Tuple

import numpy as np
from attrs import define, field
import gtsam
from gtsam.gtsam import Cal3_S2Stereo, Pose3, StereoCamera

from .backends.gtsam.conversions import (
    BIAS_CHAR,
    KeyAllocator,
    get_gtsam_pose_covariance,
    get_pose3_from_pose3d,
    get_stereo_point,
    key_to_string,
)
from .backends.gtsam.factors import (
    get_bias_prior_factor,
    get_const_vel_factor,
    get_imu_factor,
    get_preintegration_params,
    get_relative_pose_factor,
    get_smart_stereo_factor,
    get_stereo_factor,
    predict_navstate,
    preintegrate,
)
from .config import BackendParameters
from .errors import (
    GapTooLarge,
    InvalidTimestamp,
    NotFound,
    UnknownVariable,
    UnsupportedFactor,
    UsageFault,
)
from .estimator import IncrementalEstimator
from .registry import IdentifierRegistry, TriMap
from .types.covariance import as_covariance_matrix
from .types.enums import FactorKind, VariableKind
from .types.factors import (
    FactorDynamicsConstVel,
    FactorRelativePose3,
    FactorStereoProjectionPose,
    SmartFactorIMU,
    SmartFactorStereoProjectionPose,
    StereoObservation,
)
from .types.key import IdAllocator, KeyframeKeys, VariableId
from .types.variables import Keyframe
from .variable_model import VariableModel

logger = logging.getLogger(__name__)

KEYFRAME_PAIR_KINDS = (
    FactorKind.RELATIVE_POSE,
    FactorKind.DYNAMICS_CONST_VEL,
    FactorKind.IMU,
)


@define
class IncorporationRecord:
    """
    Bookkeeping of one caller factor: the caller ids it references and
    every graph slot it has occupied. Both lists only ever grow.
    """

    factor_id: int
    kind: FactorKind
    caller_ids: List[VariableId] = field(factory=list)
    slots: List[int] = field(factory=list)

    @property
    def keyframe_pair(self) -> Optional[Tuple[VariableId, VariableId]]:
        if self.kind in KEYFRAME_PAIR_KINDS:
            return self.caller_ids[0], self.caller_ids[1]
        return None


@define
class SmartLandmarkState:
    """Accumulated observations of one landmark seen only by a smart factor."""

    handle: int
    feature_id: int
    landmark_id: VariableId
    camera_id: VariableId
    record: IncorporationRecord
    observations: List[Tuple[VariableId, int, StereoObservation]] = field(factory=list)
    slot: Optional[int] = None

    @property
    def observing_keyframes(self) -> List[VariableId]:
        return [kf_id for kf_id, _, _ in self.observations]

    @property
    def materialized(self) -> bool:
        return self.slot is not None


class FactorIncorporationLayer:
    """
    Dispatches each caller factor type to its handler. Handlers run with
    the solver lock held; smart-landmark bookkeeping is only mutated here.
    """

    def __init__(
        self,
        params: BackendParameters,
        registry: IdentifierRegistry,
        estimator: IncrementalEstimator,
        variable_model: VariableModel,
        id_allocator: IdAllocator,
        key_allocator: KeyAllocator,
        keyframes: Mapping[VariableId, Keyframe],
    ):
        self.params = params
        self.registry = registry
        self.estimator = estimator
        self.variable_model = variable_model
        self._ids = id_allocator
        self._keys = key_allocator
        self._keyframes = keyframes

        self.records: List[IncorporationRecord] = []
        self._factor_ids = itertools.count()
        self._handles = itertools.count()
        self.trimap = TriMap()
        self.smart_landmarks: Dict[int, SmartLandmarkState] = {}
        self._cameras: Dict[VariableId, Cal3_S2Stereo] = {}
        self._landmark_guesses: Dict[VariableId, Optional[np.ndarray]] = {}
        self.active_imu_factors: List = []
        self._bias_key: Optional[int] = None
        self._imu_params = None

        self._handlers: Dict[type, Callable] = {
            FactorRelativePose3: self._add_relative_pose,
            FactorDynamicsConstVel: self._add_dynamics_const_vel,
            FactorStereoProjectionPose: self._add_stereo_projection,
            SmartFactorStereoProjectionPose: self._add_smart_stereo_projection,
            SmartFactorIMU: self._add_imu,
        }

    # ------------------------------------------------------------------
    # registration of non-keyframe entities
    # ------------------------------------------------------------------

    def register_camera(self, camera_id: VariableId, calibration: Cal3_S2Stereo) -> None:
        self._cameras[camera_id] = calibration

    def register_landmark(self, landmark_id: VariableId, initial_position=None) -> None:
        guess = None
        if initial_position is not None:
            guess = np.asarray(initial_position, dtype=float).reshape(3)
        self._landmark_guesses[landmark_id] = guess

    @property
    def bias_key(self) -> Optional[int]:
        return self._bias_key

    # ------------------------------------------------------------------
    # entry point
    # ------------------------------------------------------------------

    def incorporate(self, factor) -> IncorporationRecord:
        """
        Translates one caller factor into the pending buffer.

        Returns:
            the incorporation record (for repeated smart features, the
            landmark's existing record)

        Raises:
            UnsupportedFactor: unknown type, or not valid for the state vector
            UnknownVariable: a referenced caller id is not registered
            GapTooLarge: dynamics factor outside (0, max interval]
            UsageFault: any other inconsistent reference
        """
        handler = self._handlers.get(type(factor))
        if handler is None:
            raise UnsupportedFactor(f"unsupported factor type {type(factor).__name__}")
        self.variable_model.check_supported(factor.kind)
        with self.estimator.lock.hold("add_factor"):
            return handler(factor)

    # ------------------------------------------------------------------
    # lookups (no mutation)
    # ------------------------------------------------------------------

    def _keyframe_keys(self, kf_id: VariableId) -> KeyframeKeys:
        if kf_id.kind is not VariableKind.KEYFRAME:
            raise UsageFault(f"{kf_id} is not a keyframe id")
        try:
            keys = self.registry.lookup_keys(kf_id)
        except NotFound as e:
            raise UnknownVariable(f"keyframe {kf_id} is not registered") from e
        return KeyframeKeys.from_tuple(keys)

    def _keyframe(self, kf_id: VariableId) -> Keyframe:
        try:
            return self._keyframes[kf_id]
        except KeyError:
            raise UnknownVariable(f"keyframe {kf_id} is not registered") from None

    def _landmark_key(self, landmark_id: VariableId) -> int:
        if landmark_id.kind is not VariableKind.LANDMARK:
            raise UsageFault(f"{landmark_id} is not a landmark id")
        if landmark_id not in self._landmark_guesses:
            raise UnknownVariable(f"landmark {landmark_id} was not created with create_landmark")
        try:
            (key,) = self.registry.lookup_keys(landmark_id)
        except NotFound as e:
            raise UnknownVariable(f"landmark {landmark_id} is not registered") from e
        return key

    def _camera(self, camera_id: VariableId) -> Cal3_S2Stereo:
        try:
            return self._cameras[camera_id]
        except KeyError:
            raise UnknownVariable(f"camera {camera_id} is not registered") from None

    def _fallback_state(self, kf_id: VariableId) -> Tuple[Pose3, Optional[np.ndarray]]:
        """
        Initial guess for a keyframe no factor has propagated a value to:
        its caller supplied guess, else the closest earlier keyframe that
        has a value, else the identity.
        """
        keyframe = self._keyframe(kf_id)
        if keyframe.initial_pose is not None:
            return get_pose3_from_pose3d(keyframe.initial_pose), None
        earlier = sorted(
            (kf for kf in self._keyframes.values() if kf.timestamp < keyframe.timestamp),
            key=lambda kf: kf.timestamp,
            reverse=True,
        )
        for candidate in earlier:
            pose = self.estimator.pose_value(candidate.keys.pose)
            if pose is not None:
                velocity = None
                if candidate.keys.velocity is not None:
                    velocity = self.estimator.vector_value(candidate.keys.velocity)
                logger.warning(
                    f"[add_factor] no propagated guess for {kf_id}; using {candidate.id}"
                )
                return pose, velocity
        logger.warning(f"[add_factor] no initial guess for {kf_id}; using identity")
        return Pose3(), None

    def _missing_values(
        self,
        keys: KeyframeKeys,
        pose: Pose3,
        velocity: Optional[np.ndarray] = None,
    ) -> Dict[int, object]:
        values = self.variable_model.initial_values(keys, pose, velocity)
        return {k: v for k, v in values.items() if not self.estimator.has_value(k)}

    def _state_or_fallback(
        self, kf_id: VariableId, keys: KeyframeKeys, new_values: Dict[int, object]
    ) -> Tuple[Pose3, np.ndarray]:
        """Current (pose, velocity) of a keyframe, proposing a guess if it has none."""
        pose = self.estimator.pose_value(keys.pose)
        if pose is None:
            pose, velocity = self._fallback_state(kf_id)
            new_values.update(self._missing_values(keys, pose, velocity))
        velocity = None
        if keys.velocity is not None:
            velocity = self.estimator.vector_value(keys.velocity)
            if velocity is None:
                velocity = new_values.get(keys.velocity)
            if velocity is None:
                velocity = np.zeros(3)
                new_values[keys.velocity] = velocity
        return pose, velocity

    # ------------------------------------------------------------------
    # mutation helpers
    # ------------------------------------------------------------------

    def _commit_to_pending(self, new_values: Dict[int, object], factors: List) -> List[int]:
        self.estimator.insert_values(new_values)
        return [self.estimator.add_factor(f) for f in factors]

    def _new_record(
        self, kind: FactorKind, caller_ids: List[VariableId], slots: List[int]
    ) -> IncorporationRecord:
        record = IncorporationRecord(next(self._factor_ids), kind, list(caller_ids), list(slots))
        self.records.append(record)
        logger.debug(
            f"[add_factor] #{record.factor_id} {kind.value} on "
            f"{[str(c) for c in caller_ids]} -> slots {slots}"
        )
        return record

    # ------------------------------------------------------------------
    # handlers
    # ------------------------------------------------------------------

    def _add_relative_pose(self, factor: FactorRelativePose3) -> IncorporationRecord:
        if factor.from_kf == factor.to_kf:
            raise UsageFault(f"relative pose factor from {factor.from_kf} to itself")
        keys_i = self._keyframe_keys(factor.from_kf)
        keys_j = self._keyframe_keys(factor.to_kf)
        covariance = get_gtsam_pose_covariance(as_covariance_matrix(factor.covariance))
        rel_pose = get_pose3_from_pose3d(factor.rel_pose)
        gtsam_factor = get_relative_pose_factor(keys_i.pose, keys_j.pose, rel_pose, covariance)

        new_values: Dict[int, object] = {}
        pose_i = self.estimator.pose_value(keys_i.pose)
        pose_j = self.estimator.pose_value(keys_j.pose)
        if pose_i is None and pose_j is not None:
            velocity = None
            if keys_j.velocity is not None:
                velocity = self.estimator.vector_value(keys_j.velocity)
            new_values.update(
                self._missing_values(keys_i, pose_j.compose(rel_pose.inverse()), velocity)
            )
        else:
            pose_i, vel_i = self._state_or_fallback(factor.from_kf, keys_i, new_values)
            if pose_j is None:
                new_values.update(self._missing_values(keys_j, pose_i.compose(rel_pose), vel_i))

        slots = self._commit_to_pending(new_values, [gtsam_factor])
        return self._new_record(factor.kind, [factor.from_kf, factor.to_kf], slots)

    def _add_dynamics_const_vel(self, factor: FactorDynamicsConstVel) -> IncorporationRecord:
        keys_i = self._keyframe_keys(factor.from_kf)
        keys_j = self._keyframe_keys(factor.to_kf)
        dt = self._keyframe(factor.to_kf).timestamp - self._keyframe(factor.from_kf).timestamp
        max_dt = self.params.max_interval_between_kfs_for_dynamic_model
        if not 0.0 < dt <= max_dt:
            logger.warning(
                f"[add_factor] dynamics factor {factor.from_kf}->{factor.to_kf} skipped: "
                f"dt={dt:.3f}s outside (0, {max_dt}]"
            )
            raise GapTooLarge(
                f"dynamics factor needs 0 < dt <= {max_dt}s, got dt={dt:.3f}s "
                f"between {factor.from_kf} and {factor.to_kf}"
            )
        gtsam_factor = get_const_vel_factor(
            keys_i.pose,
            keys_i.velocity,
            keys_j.pose,
            keys_j.velocity,
            dt,
            self.params.const_vel_model_std_pos,
            self.params.const_vel_model_std_vel,
        )

        new_values: Dict[int, object] = {}
        pose_i, vel_i = self._state_or_fallback(factor.from_kf, keys_i, new_values)
        if self.estimator.pose_value(keys_j.pose) is None:
            predicted = Pose3(pose_i.rotation(), pose_i.translation() + vel_i * dt)
            new_values.update(self._missing_values(keys_j, predicted, vel_i))
        else:
            self._state_or_fallback(factor.to_kf, keys_j, new_values)

        slots = self._commit_to_pending(new_values, [gtsam_factor])
        return self._new_record(factor.kind, [factor.from_kf, factor.to_kf], slots)

    def _add_stereo_projection(self, factor: FactorStereoProjectionPose) -> IncorporationRecord:
        keys = self._keyframe_keys(factor.observing_kf)
        landmark_key = self._landmark_key(factor.observed_landmark)
        K = self._camera(factor.camera_id)
        measured = get_stereo_point(factor.observation)
        gtsam_factor = get_stereo_factor(
            measured, self.params.stereo_noise_sigma, keys.pose, landmark_key, K
        )

        new_values: Dict[int, object] = {}
        pose, _ = self._state_or_fallback(factor.observing_kf, keys, new_values)
        if not self.estimator.has_value(landmark_key):
            guess = self._landmark_guesses[factor.observed_landmark]
            if guess is None:
                if factor.observation.disparity <= 0.0:
                    raise UsageFault(
                        f"landmark {factor.observed_landmark} has no initial position and "
                        f"its first observation has zero disparity"
                    )
                guess = np.asarray(StereoCamera(pose, K).backproject(measured))
            new_values[landmark_key] = np.asarray(guess, dtype=float).reshape(3)
            logger.debug(
                f"[add_factor] landmark {factor.observed_landmark} "
                f"({key_to_string(landmark_key)}) enters the graph at {new_values[landmark_key]}"
            )

        slots = self._commit_to_pending(new_values, [gtsam_factor])
        return self._new_record(
            factor.kind, [factor.observing_kf, factor.observed_landmark], slots
        )

    def _add_smart_stereo_projection(
        self, factor: SmartFactorStereoProjectionPose
    ) -> IncorporationRecord:
        K = self._camera(factor.camera_id)
        state = None
        if factor.feature_id in self.trimap:
            state = self.smart_landmarks[self.trimap.handle_of_feature(factor.feature_id)]
            if state.camera_id != factor.camera_id:
                raise UsageFault(
                    f"feature {factor.feature_id} was observed with camera {state.camera_id}, "
                    f"not {factor.camera_id}"
                )

        seen = set(state.observing_keyframes) if state is not None else set()
        fresh: List[Tuple[VariableId, int, StereoObservation]] = []
        fresh_keys: Dict[VariableId, KeyframeKeys] = {}
        for kf_id, observation in factor.observations:
            keys = self._keyframe_keys(kf_id)
            if kf_id in seen:
                logger.debug(
                    f"[add_factor] feature {factor.feature_id} already observed from {kf_id}"
                )
                continue
            seen.add(kf_id)
            fresh.append((kf_id, keys.pose, observation))
            fresh_keys[kf_id] = keys

        observations = (state.observations if state is not None else []) + fresh
        gtsam_factor = None
        if fresh and len(observations) >= 2:
            gtsam_factor = get_smart_stereo_factor(
                [(get_stereo_point(obs), pose_key) for _, pose_key, obs in observations],
                K,
                self.params.stereo_noise_sigma,
            )

        new_values: Dict[int, object] = {}
        for kf_id, keys in fresh_keys.items():
            self._state_or_fallback(kf_id, keys, new_values)

        # validated; mutate from here on
        if state is None:
            landmark_id = self._ids.allocate(VariableKind.LANDMARK)
            handle = next(self._handles)
            record = self._new_record(factor.kind, [landmark_id], [])
            state = SmartLandmarkState(
                handle, factor.feature_id, landmark_id, factor.camera_id, record
            )
            self.trimap.insert(factor.feature_id, handle, landmark_id)
            self.smart_landmarks[handle] = state
            logger.debug(
                f"[add_factor] feature {factor.feature_id} -> smart landmark {landmark_id}"
            )

        self.estimator.insert_values(new_values)
        state.observations.extend(fresh)
        state.record.caller_ids.extend(kf_id for kf_id, _, _ in fresh)

        if gtsam_factor is not None:
            if state.slot is not None and self.estimator.is_pending(state.slot):
                self.estimator.replace_pending_factor(state.slot, gtsam_factor)
            else:
                if state.slot is not None:
                    self.estimator.mark_changed(state.slot)
                state.slot = self.estimator.add_factor(gtsam_factor)
                state.record.slots.append(state.slot)
            logger.debug(
                f"[add_factor] smart landmark {state.landmark_id}: "
                f"{len(state.observations)} observation(s), slot {state.slot}"
            )
        return state.record

    def _add_imu(self, factor: SmartFactorIMU) -> IncorporationRecord:
        keys_i = self._keyframe_keys(factor.from_kf)
        keys_j = self._keyframe_keys(factor.to_kf)
        t_i = self._keyframe(factor.from_kf).timestamp
        t_j = self._keyframe(factor.to_kf).timestamp
        if t_j <= t_i:
            raise InvalidTimestamp(
                f"IMU factor must go forward in time: {factor.from_kf}@{t_i} -> "
                f"{factor.to_kf}@{t_j}"
            )
        if self._imu_params is None:
            self._imu_params = get_preintegration_params(
                self.params.imu_gravity,
                self.params.imu_accel_noise_sigma,
                self.params.imu_gyro_noise_sigma,
                self.params.imu_integration_sigma,
            )
        pim = preintegrate(factor.samples, self._imu_params)
        if not np.isclose(pim.deltaTij(), t_j - t_i, rtol=0.05, atol=1e-3):
            logger.warning(
                f"[add_factor] IMU samples span {pim.deltaTij():.3f}s but keyframes are "
                f"{t_j - t_i:.3f}s apart"
            )

        new_values: Dict[int, object] = {}
        pose_i, vel_i = self._state_or_fallback(factor.from_kf, keys_i, new_values)
        if self.estimator.pose_value(keys_j.pose) is None:
            pose_j, vel_j = predict_navstate(pim, pose_i, vel_i)
            new_values.update(self._missing_values(keys_j, pose_j, vel_j))
        else:
            self._state_or_fallback(factor.to_kf, keys_j, new_values)

        # validated; mutate from here on
        factors = []
        if self._bias_key is None:
            self._bias_key = self._keys.allocate(BIAS_CHAR)
            new_values[self._bias_key] = gtsam.imuBias.ConstantBias()
            factors.append(get_bias_prior_factor(self._bias_key, self.params.imu_bias_prior_sigma))
            logger.info(f"[add_factor] shared IMU bias {key_to_string(self._bias_key)} created")
        imu_factor = get_imu_factor(
            keys_i.pose, keys_i.velocity, keys_j.pose, keys_j.velocity, self._bias_key, pim
        )
        factors.append(imu_factor)
        slots = self._commit_to_pending(new_values, factors)
        self.active_imu_factors.append(imu_factor)
        return self._new_record(factor.kind, [factor.from_kf, factor.to_kf], slots[-1:])
