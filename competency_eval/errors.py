"""Error taxonomy for the level subsystem.

Data-availability problems are absorbed by the evaluators (they return a
default report); tier and session misuse is raised to the caller.
"""


class CompetencyEvalError(Exception):
    """Base class for every error raised by this package."""


class InvalidTierError(CompetencyEvalError, ValueError):
    """An unrecognized tier identifier was supplied."""

    def __init__(self, tier):
        self.tier = tier
        super().__init__(f"Invalid tier: {tier!r}")


class SessionStateError(CompetencyEvalError):
    """A placement session was used in a state that does not allow the call."""


class UpstreamUnavailableError(CompetencyEvalError):
    """The competency store or analytics source could not be read."""


class ContentError(CompetencyEvalError):
    """Tier requirement or placement question content is malformed."""
