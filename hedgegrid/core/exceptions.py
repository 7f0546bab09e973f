"""Engine-level exceptions for strategy lifecycle, optimization and persistence"""


class GridEngineError(Exception):
    """Base exception for all engine errors"""

    pass


class ValidationError(GridEngineError):
    """Raised when input is malformed or out of range"""

    pass


class InvalidBudgetError(ValidationError):
    """Raised when the optimizer budget constraints are inconsistent"""

    pass


class NoFeasibleGridError(ValidationError):
    """Raised when no grid configuration satisfies the optimizer constraints"""

    pass


class DuplicateStrategyError(GridEngineError):
    """Raised when an active strategy already exists for the credential and pair"""

    pass


class NotFoundError(GridEngineError):
    """Raised when a strategy does not exist or is not visible to the credential"""

    pass


class InvalidTransitionError(GridEngineError):
    """Raised when a lifecycle transition is not allowed from the current state"""

    pass


class DataUnavailableError(GridEngineError):
    """Raised when price feed or candle history is missing"""

    pass


class PersistenceError(GridEngineError):
    """Raised when the strategy repository fails"""

    pass
