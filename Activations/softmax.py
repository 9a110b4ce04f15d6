import numpy as np


class Softmax:
    """
    Softmax over the class axis. Used by the class-normalized loss to turn
    raw scores (N, C, H, W) into per-position probabilities.
    """

    def __init__(self, axis=1):
        self.axis = axis
        self.output = None

    def forward(self, input, out=None):
        # Prevent overflow by subtracting max value (numerical stability)
        exp_vals = np.exp(input - np.max(input, axis=self.axis, keepdims=True))
        probabilities = exp_vals / np.sum(exp_vals, axis=self.axis, keepdims=True)

        if out is not None:
            # Write into a caller-owned buffer (same shape as input)
            out[...] = probabilities
            probabilities = out

        self.output = probabilities
        return self.output
