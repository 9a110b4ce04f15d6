import numpy as np


def numerical_gradient(layer, scores, labels, index=None, step=1e-3):
    """
    Central finite-difference gradient of layer.forward(scores, labels)
    with respect to the scores.

    - index: a single score entry (tuple) to perturb, or None for all entries
    - step: perturbation size

    Returns a float for a single index, else an array shaped like scores.
    """
    scores = np.array(scores, dtype=np.float64)

    def partial(idx):
        original = scores[idx]
        scores[idx] = original + step
        loss_plus = layer.forward(scores, labels)
        scores[idx] = original - step
        loss_minus = layer.forward(scores, labels)
        scores[idx] = original
        return (loss_plus - loss_minus) / (2 * step)

    if index is not None:
        return partial(tuple(index))

    grad = np.zeros_like(scores)
    for idx in np.ndindex(*scores.shape):
        grad[idx] = partial(idx)
    return grad


def check_gradient(layer, scores, labels, indices=None, loss_weight=1.0, step=1e-3):
    """
    Compares layer.backward() against finite differences.

    - indices: list of score entries to check, or None to check every entry

    Returns the largest absolute difference found.
    """
    scores = np.array(scores, dtype=np.float64)

    layer.forward(scores, labels)
    analytic = layer.backward(loss_weight=loss_weight).copy()

    if indices is None:
        numeric = loss_weight * numerical_gradient(layer, scores, labels, step=step)
        error = np.max(np.abs(analytic - numeric))
    else:
        error = 0.0
        for idx in indices:
            numeric = loss_weight * numerical_gradient(
                layer, scores, labels, index=idx, step=step
            )
            error = max(error, abs(analytic[tuple(idx)] - numeric))

    # Leave the layer in the state of the unperturbed forward pass
    layer.forward(scores, labels)
    return float(error)
