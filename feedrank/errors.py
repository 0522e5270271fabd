"""Error taxonomy shared by the sweeps, the delivery engine and the control API."""


class FeedRankError(Exception):
    pass


class UpstreamAuthError(FeedRankError):
    """Feed credential is missing, invalid or expired."""


class UpstreamNotFoundError(FeedRankError):
    """A source or channel identifier could not be resolved upstream."""


class DeliveryError(FeedRankError):
    """A single transport call failed."""


class PersistenceConflict(FeedRankError):
    """Duplicate key on insert."""


class ValidationError(FeedRankError):
    """Input rejected at the boundary before it reaches the core."""


class SourceNotFoundError(FeedRankError):
    pass


class PostNotFoundError(FeedRankError):
    pass


class StatusTransitionError(FeedRankError):
    """Raised when a post status change would move backwards or leave `forwarded`."""
