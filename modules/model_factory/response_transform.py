from enum import Enum

import numpy as np

from utils import constants


class ResponseTransform(Enum):
    """
    Units the forest is fitted in.

    SQUARE_ROOT fits on sqrt(response); predictions are squared to return to
    accumulated degree days.
    """
    IDENTITY = constants.TRANSFORM_IDENTITY
    SQUARE_ROOT = constants.TRANSFORM_SQUARE_ROOT

    @classmethod
    def parse(cls, value) -> "ResponseTransform":
        if isinstance(value, cls):
            return value
        aliases = {'squareRoot': cls.SQUARE_ROOT, 'sqrt': cls.SQUARE_ROOT}
        if value in aliases:
            return aliases[value]
        return cls(value)

    def forward(self, y) -> np.ndarray:
        y = np.asarray(y, dtype=float)
        if self is ResponseTransform.SQUARE_ROOT:
            return np.sqrt(y)
        return y

    def inverse(self, predictions) -> np.ndarray:
        predictions = np.asarray(predictions, dtype=float)
        if self is ResponseTransform.SQUARE_ROOT:
            return predictions ** 2
        return predictions
