"""
Identifier types for the estimator.

Caller-facing ids (VariableId) and internal solver keys (plain ints
produced by the gtsam backend) live in separate namespaces and are only
related through the IdentifierRegistry.
"""
import itertools
import threading
from typing import Optional, Tuple

from attrs import define, field, validators

from .enums import VariableKind


@define(frozen=True, order=True)
class VariableId:
    """
    Opaque caller-facing identifier of a keyframe, landmark or camera.
    Indices are assigned monotonically and never reused.
    """

    index: int = field(
        validator=[validators.instance_of(int), validators.ge(0)],
        metadata={"description": "Monotonic index, unique across all kinds"},
    )
    kind: VariableKind = field(
        validator=validators.instance_of(VariableKind),
        order=False,
        metadata={"description": "What the identifier refers to"},
    )

    def __str__(self) -> str:
        return f"{self.kind.value}{self.index}"

    @property
    def is_keyframe(self) -> bool:
        return self.kind is VariableKind.KEYFRAME

    @property
    def is_landmark(self) -> bool:
        return self.kind is VariableKind.LANDMARK


class IdAllocator:
    """Thread-safe monotonic source of VariableIds."""

    def __init__(self, start: int = 0):
        self._counter = itertools.count(start)
        self._lock = threading.Lock()

    def allocate(self, kind: VariableKind) -> VariableId:
        with self._lock:
            return VariableId(next(self._counter), kind)


@define(frozen=True)
class KeyframeKeys:
    """
    Internal solver keys occupied by one keyframe: a pose key and, in
    velocity mode, a velocity key.
    """

    pose: int = field(validator=validators.instance_of(int))
    velocity: Optional[int] = field(
        default=None, validator=validators.optional(validators.instance_of(int))
    )

    def as_tuple(self) -> Tuple[int, ...]:
        if self.velocity is None:
            return (self.pose,)
        return (self.pose, self.velocity)

    @classmethod
    def from_tuple(cls, keys: Tuple[int, ...]) -> "KeyframeKeys":
        if len(keys) == 1:
            return cls(keys[0])
        if len(keys) == 2:
            return cls(keys[0], keys[1])
        raise ValueError(f"a keyframe occupies 1 or 2 keys, got {keys}")
