from .model_factory import ModelFactory
from .response_transform import ResponseTransform

__all__ = ['ModelFactory', 'ResponseTransform']
