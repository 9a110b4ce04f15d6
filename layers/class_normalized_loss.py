from typing import Optional, Sequence, Tuple

import numpy as np
from Activations import Softmax

# Smallest positive normal float32, used to floor probabilities before log
EPSILON = np.finfo(np.float32).tiny


class ConfigurationError(ValueError):
    """Raised when the layer is set up or called in a way it does not support."""


class InvariantViolation(RuntimeError):
    """Raised when the labels break the counting invariant (a present class with zero count)."""


def _valid_mask(labels: np.ndarray, ignore_label: Optional[int]) -> np.ndarray:
    if ignore_label is None:
        return np.ones(labels.shape, dtype=bool)
    return labels != ignore_label


def class_counts(
    labels: np.ndarray, num_classes: int, ignore_label: Optional[int] = None
) -> np.ndarray:
    """
    Counts how many positions of a single example carry each class label.

    - labels: integer labels of one example, any shape (e.g. (1, H, W))
    - ignore_label: positions with this value are not counted

    Returns an int array of length num_classes whose sum equals the number
    of non-ignored positions.
    """
    labels = np.asarray(labels).astype(np.int64).ravel()
    labels = labels[_valid_mask(labels, ignore_label)]

    out_of_range = (labels < 0) | (labels >= num_classes)
    if np.any(out_of_range):
        raise InvariantViolation(
            f"Label value {labels[out_of_range][0]} is outside [0, {num_classes}) "
            f"and is not the ignore label ({ignore_label})."
        )

    return np.bincount(labels, minlength=num_classes)


class SoftmaxWithClassNormalizedLoss:
    """
    Softmax followed by a cross-entropy loss where every labeled position is
    divided by the number of positions sharing its class in the same example.
    The per-example sum is then averaged over the batch.

    Scores are (N, C, H, W) (any trailing spatial layout works), labels hold
    one integer class id per position: (N, 1, H, W) or (N, H, W).
    """

    def __init__(self, num_classes=2, ignore_label=None, normalize=True):
        if normalize is not True:
            raise ConfigurationError(
                "SoftmaxWithClassNormalizedLoss cannot have normalization set to false."
            )

        self.num_classes = num_classes
        self.ignore_label = ignore_label
        self.normalize = normalize

        # Owned probability transform and the buffer it writes into
        self.softmax = Softmax(axis=1)
        self.prob = None

        # Integer labels of the last forward pass, reshaped to (N, H*W)
        self.labels = None

    @classmethod
    def from_param(cls, param):
        """Builds the layer from a LossParameter-like object (see config.py)."""
        return cls(
            num_classes=param.num_classes,
            ignore_label=param.ignore_label,
            normalize=param.normalize,
        )

    # --- Configuration & validation ---

    def _check_channels(self, score_shape):
        if len(score_shape) < 2 or score_shape[1] != self.num_classes:
            raise ConfigurationError(
                f"Score tensor must have exactly {self.num_classes} channels, "
                f"got shape {tuple(score_shape)}."
            )

    def setup(self, score_shape: Sequence[int], label_shape: Sequence[int]):
        """Validates the input shapes and allocates the probability buffer."""
        self.reshape(score_shape, label_shape)

    def reshape(self, score_shape, label_shape, dtype=np.float64):
        self._check_channels(score_shape)

        N = score_shape[0]
        if N == 0:
            raise ConfigurationError("Score tensor must hold at least one example.")

        # A flat (N*H*W,) label vector is accepted, any other layout keeps the batch axis
        if len(label_shape) >= 2 and label_shape[0] != N:
            raise ConfigurationError(
                f"Label tensor {tuple(label_shape)} has {label_shape[0]} examples, "
                f"the score tensor {tuple(score_shape)} has {N}."
            )

        spatial_dim = int(np.prod(score_shape[2:], dtype=np.int64))
        if int(np.prod(label_shape, dtype=np.int64)) != N * spatial_dim:
            raise ConfigurationError(
                f"Label tensor {tuple(label_shape)} must hold one label per position "
                f"of the score tensor {tuple(score_shape)}."
            )

        if (
            self.prob is None
            or self.prob.shape != tuple(score_shape)
            or self.prob.dtype != dtype
        ):
            self.prob = np.empty(score_shape, dtype=dtype)

    # --- Forward ---

    def forward(self, scores, labels, return_prob=False):
        """
        Computes the class-normalized loss.

        - scores: raw class scores (N, C, H, W)
        - labels: integer class ids (N, 1, H, W); ignore_label positions are skipped
        - return_prob: also return a read-only view of the softmax output

        Returns the scalar loss, or (loss, prob) if return_prob is set.
        """
        scores = np.asarray(scores)
        labels = np.asarray(labels)
        dtype = scores.dtype if np.issubdtype(scores.dtype, np.floating) else np.float64
        self.reshape(scores.shape, labels.shape, dtype=dtype)

        self.softmax.forward(scores, out=self.prob)

        N = scores.shape[0]
        prob = self.prob.reshape(N, self.num_classes, -1)
        self.labels = labels.astype(np.int64).reshape(N, -1)

        total_loss = 0.0
        for i in range(N):  # iterate over batch
            label_row = self.labels[i]
            count = class_counts(label_row, self.num_classes, self.ignore_label)

            positions = np.flatnonzero(_valid_mask(label_row, self.ignore_label))
            label_value = label_row[positions]
            denominators = self._denominators(count, label_value)

            p = np.maximum(prob[i, label_value, positions], EPSILON)
            i_loss = -np.sum(np.log(p) / denominators)
            total_loss += i_loss / N

        loss = float(total_loss)

        if return_prob:
            # Shares the internal buffer, callers must not write to it
            prob_view = self.prob.view()
            prob_view.flags.writeable = False
            return loss, prob_view
        return loss

    @staticmethod
    def _denominators(count, label_value):
        denominators = count[label_value]
        if np.any(denominators <= 0):
            raise InvariantViolation(
                "A label is present in the example but its class count is zero."
            )
        return denominators

    # --- Backward ---

    def backward(
        self,
        loss_weight=1.0,
        propagate_down: Tuple[bool, ...] = (True, False),
        out: Optional[np.ndarray] = None,
    ):
        """
        Gradient of the loss w.r.t. the raw scores of the last forward pass:
        (p_c - [c == label]) / count[label], scaled by loss_weight / N.
        Ignored positions get a zero gradient in every channel.

        - loss_weight: incoming gradient of the loss scalar
        - propagate_down: (scores, labels) flags; labels can never receive a gradient
        - out: optional caller-owned buffer with the shape of the scores

        Returns the gradient array, or None if scores do not need a gradient.
        """
        if len(propagate_down) > 1 and propagate_down[1]:
            raise ConfigurationError(
                "SoftmaxWithClassNormalizedLoss cannot backpropagate to label inputs."
            )
        if self.prob is None or self.labels is None:
            raise RuntimeError("Forward pass must be run before backward pass.")
        self._check_channels(self.prob.shape)

        if not propagate_down[0]:
            return None

        if out is None:
            out = np.empty_like(self.prob)
        elif out.shape != self.prob.shape:
            raise ConfigurationError(
                f"Gradient buffer {out.shape} does not match scores {self.prob.shape}."
            )

        N = self.prob.shape[0]
        prob = self.prob.reshape(N, self.num_classes, -1)
        d_L_d_scores = np.zeros_like(prob)

        for i in range(N):  # iterate over batch
            label_row = self.labels[i]
            count = class_counts(label_row, self.num_classes, self.ignore_label)

            positions = np.flatnonzero(_valid_mask(label_row, self.ignore_label))
            label_value = label_row[positions]
            denominators = self._denominators(count, label_value)

            # dL/dZ = P - Y at every non-ignored position
            grad = prob[i][:, positions].copy()
            grad[label_value, np.arange(positions.size)] -= 1
            d_L_d_scores[i][:, positions] = grad / denominators

        scale = np.asarray(loss_weight, dtype=np.float64).item() / N
        out[...] = (d_L_d_scores * scale).reshape(out.shape)
        return out
