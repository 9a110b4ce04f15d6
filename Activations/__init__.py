from .softmax import Softmax

__all__ = ["Softmax"]
