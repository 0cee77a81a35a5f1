"""
Error taxonomy of the back-end.

Usage faults are caller protocol violations raised synchronously and never
retried. Configuration faults are detected before any estimator state
exists. Numeric faults surface as a failed commit with the previously
published estimate left in place. Resource faults report lock contention.
"""


class AslamError(Exception):
    """Base class of every error raised by this package."""


class UsageFault(AslamError):
    """The caller violated the calling protocol."""


class NotFound(UsageFault):
    """A registry lookup referenced an identifier that was never registered."""


class UnknownVariable(NotFound):
    """A factor references a caller id that is not a registered variable."""


class DuplicateRegistration(UsageFault):
    """A caller id or internal key was registered twice."""


class InvalidTimestamp(UsageFault):
    """A keyframe timestamp is not strictly increasing."""


class GapTooLarge(UsageFault):
    """A dynamics factor spans a non-positive or too long time interval."""


class UnsupportedFactor(UsageFault):
    """The factor type is unknown or invalid for the configured state vector."""


class ConfigurationFault(AslamError):
    """Invalid or inconsistent back-end parameters."""


class NumericFault(AslamError):
    """The numerical solve could not produce an estimate."""


class SolveFailure(NumericFault):
    """A commit failed; the underlying solver exception is chained as __cause__."""


class ResourceFault(AslamError):
    """A shared resource could not be acquired."""


class LockTimeout(ResourceFault):
    """A lock was not acquired within the configured timeout."""
