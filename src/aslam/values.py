"""
Immutable snapshot of the solver output.
"""
from typing import FrozenSet, Optional

import numpy as np
from attrs import define, field
from gtsam.gtsam import Pose3, Values


@define(frozen=True, eq=False)
class PublishedEstimate:
    """
    The last committed solution. A new instance is built for every
    successful commit and swapped in as a whole; the wrapped Values are
    never mutated after construction.
    """

    values: Values = field(factory=Values)
    commit_index: int = field(default=0)
    keys: FrozenSet[int] = field(factory=frozenset)

    @classmethod
    def from_values(cls, values: Values, commit_index: int) -> "PublishedEstimate":
        copy = Values(values)
        return cls(copy, commit_index, frozenset(copy.keys()))

    def exists(self, key: int) -> bool:
        return key in self.keys

    def pose(self, key: int) -> Optional[Pose3]:
        return self.values.atPose3(key) if key in self.keys else None

    def vector(self, key: int) -> Optional[np.ndarray]:
        return np.asarray(self.values.atVector(key)) if key in self.keys else None

    def point(self, key: int) -> Optional[np.ndarray]:
        return np.asarray(self.values.atPoint3(key)) if key in self.keys else None

    def __len__(self) -> int:
        return len(self.keys)
