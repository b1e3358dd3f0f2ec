"""
Custom exception hierarchy for the degree-day cross-validation pipeline.
"""

class DegreeDayMLException(Exception):
    """Base exception for all system errors."""
    pass

class ConfigurationError(DegreeDayMLException):
    """Configuration validation failed."""
    pass

class DataShapeError(DegreeDayMLException):
    """Input dataset is missing columns or holds unusable values."""
    pass

class SweepStateError(DegreeDayMLException):
    """A sweep step was requested out of order."""
    pass

class FitError(DegreeDayMLException):
    """
    A single (replicate, combination) fit or predict failed.

    The indices travel with the exception so the driver can report exactly
    which unit aborted the sweep, including across joblib worker processes.
    """

    def __init__(self, message: str, replicate_index: int = None, combination_index: int = None):
        super().__init__(message)
        self.replicate_index = replicate_index
        self.combination_index = combination_index

    def __reduce__(self):
        return (self.__class__, (self.args[0], self.replicate_index, self.combination_index))
