"""Error hierarchy shared by the allocator, the DKG coordinator and rotation."""


class FleetError(Exception):
    """Base class for every error raised by the core."""


class ValidationError(FleetError, ValueError):
    """调用参数错误 / The caller must correct the input and resubmit."""


class StateError(FleetError, RuntimeError):
    """状态冲突 / Rejected to keep replays and concurrent attempts idempotent."""


class PermissionDenied(FleetError):
    """Raised by the boundary layer when a capability check fails."""


# —— 参数校验类错误 ——


class InvalidConfiguration(ValidationError):
    pass


class InvalidSize(ValidationError):
    pass


class InvalidPlace(ValidationError):
    pass


class Underflow(ValidationError):
    pass


class InvalidPoint(ValidationError):
    pass


class InvalidVectorLength(ValidationError):
    pass


class TimeLimitExceeded(ValidationError):
    pass


class DeadlineNotReached(ValidationError):
    pass


class ComplaintTooEarly(ValidationError):
    pass


class InvalidComplaint(ValidationError):
    pass


class CommitmentMismatch(ValidationError):
    pass


class InvalidSecretNumber(ValidationError):
    pass


class UnknownNode(ValidationError):
    pass


class UnknownCluster(ValidationError):
    pass


class NodeNotInGroup(ValidationError):
    pass


# —— 状态一致性错误 ——


class AlreadyBroadcasted(StateError):
    pass


class AlreadyAlright(StateError):
    pass


class ComplaintAlreadyOpen(StateError):
    pass


class NoOpenComplaint(StateError):
    pass


class PreResponseAlreadySubmitted(StateError):
    pass


class PreResponseMissing(StateError):
    pass


class ChannelNotOpened(StateError):
    pass


class IncorrectChannelState(StateError):
    pass


class DkgNotFinished(StateError):
    pass


class RotationInProgress(StateError):
    pass


class NoFreeNodes(StateError):
    pass


class NoPreviousNode(StateError):
    pass


class NodeHasActiveClusters(StateError):
    pass


class ClusterAlreadyExists(StateError):
    pass
