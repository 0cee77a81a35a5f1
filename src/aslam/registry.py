"""
Bidirectional mappings between caller-facing ids and internal solver keys.
"""
import logging
from typing import Dict, Hashable, List, Tuple

from .errors import DuplicateRegistration, NotFound
from .types.key import VariableId
from .utils.locks import TimedRLock

logger = logging.getLogger(__name__)


class IdentifierRegistry:
    """
    caller id -> tuple of internal keys, and internal key -> caller id.

    Entries are permanent: a caller id keeps its keys for the lifetime of
    the registry and keys are never remapped. Guarded by its own lock.
    """

    def __init__(self, lock_timeout: float = 5.0):
        self.lock = TimedRLock("registry", lock_timeout)
        self._keys_of: Dict[VariableId, Tuple[int, ...]] = {}
        self._caller_of: Dict[int, VariableId] = {}

    def register(self, caller_id: VariableId, keys: Tuple[int, ...]) -> None:
        """
        Registers the internal keys of a caller id.

        Raises:
            DuplicateRegistration: the caller id, or one of the keys, is
                already registered
        """
        keys = tuple(keys)
        with self.lock.hold("register"):
            if caller_id in self._keys_of:
                raise DuplicateRegistration(
                    f"{caller_id} already registered with keys {self._keys_of[caller_id]}"
                )
            if len(set(keys)) != len(keys):
                raise DuplicateRegistration(f"{caller_id}: repeated key in {keys}")
            for key in keys:
                if key in self._caller_of:
                    raise DuplicateRegistration(
                        f"key {key} already belongs to {self._caller_of[key]}"
                    )
            self._keys_of[caller_id] = keys
            for key in keys:
                self._caller_of[key] = caller_id
        logger.debug(f"[register] {caller_id} -> {keys}")

    def lookup_keys(self, caller_id: VariableId) -> Tuple[int, ...]:
        with self.lock.hold("lookup_keys"):
            try:
                return self._keys_of[caller_id]
            except KeyError:
                raise NotFound(f"caller id {caller_id} is not registered") from None

    def lookup_caller_id(self, key: int) -> VariableId:
        with self.lock.hold("lookup_caller_id"):
            try:
                return self._caller_of[key]
            except KeyError:
                raise NotFound(f"internal key {key} is not registered") from None

    def contains(self, caller_id: VariableId) -> bool:
        with self.lock.hold("contains"):
            return caller_id in self._keys_of

    def caller_ids(self) -> List[VariableId]:
        with self.lock.hold("caller_ids"):
            return list(self._keys_of)

    def __len__(self) -> int:
        with self.lock.hold("len"):
            return len(self._keys_of)


class TriMap:
    """
    feature id <-> solver landmark handle <-> caller landmark id, for
    landmarks represented only by a smart factor.

    Not locked: it is only mutated by the incorporation layer while the
    solver lock is held.
    """

    def __init__(self):
        self._handle_of_feature: Dict[Hashable, int] = {}
        self._feature_of_handle: Dict[int, Hashable] = {}
        self._caller_of_handle: Dict[int, VariableId] = {}
        self._handle_of_caller: Dict[VariableId, int] = {}

    def insert(self, feature_id: Hashable, handle: int, caller_id: VariableId) -> None:
        if feature_id in self._handle_of_feature:
            raise DuplicateRegistration(f"feature {feature_id} already mapped")
        if handle in self._caller_of_handle:
            raise DuplicateRegistration(f"landmark handle {handle} already mapped")
        if caller_id in self._handle_of_caller:
            raise DuplicateRegistration(f"landmark {caller_id} already mapped")
        self._handle_of_feature[feature_id] = handle
        self._feature_of_handle[handle] = feature_id
        self._caller_of_handle[handle] = caller_id
        self._handle_of_caller[caller_id] = handle

    def handle_of_feature(self, feature_id: Hashable) -> int:
        try:
            return self._handle_of_feature[feature_id]
        except KeyError:
            raise NotFound(f"feature {feature_id} has no smart landmark") from None

    def feature_of_handle(self, handle: int) -> Hashable:
        try:
            return self._feature_of_handle[handle]
        except KeyError:
            raise NotFound(f"unknown landmark handle {handle}") from None

    def caller_of_handle(self, handle: int) -> VariableId:
        try:
            return self._caller_of_handle[handle]
        except KeyError:
            raise NotFound(f"unknown landmark handle {handle}") from None

    def handle_of_caller(self, caller_id: VariableId) -> int:
        try:
            return self._handle_of_caller[caller_id]
        except KeyError:
            raise NotFound(f"{caller_id} is not a smart landmark") from None

    def __contains__(self, feature_id: Hashable) -> bool:
        return feature_id in self._handle_of_feature

    def __len__(self) -> int:
        return len(self._handle_of_feature)
