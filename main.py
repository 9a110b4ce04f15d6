import os

import numpy as np
from config import load_config, loss_param_from_config
from gradient_check import check_gradient
from layers.class_normalized_loss import SoftmaxWithClassNormalizedLoss

CONFIG_FILE = os.path.join(os.path.dirname(__file__), "configs", "class_normalized.yaml")

# --- 1. Data Utility Functions ---


def create_dummy_batch(batch_size=2, H=16, W=16, foreground_size=3, ignore_label=255):
    """
    Creates an imbalanced two-class segmentation batch: mostly background (0),
    one small foreground square (1) per example and an ignored one-pixel border.
    """
    scores = np.random.randn(batch_size, 2, H, W)
    labels = np.zeros((batch_size, 1, H, W), dtype=np.int64)

    for b in range(batch_size):
        top = np.random.randint(1, H - foreground_size)
        left = np.random.randint(1, W - foreground_size)
        labels[b, 0, top : top + foreground_size, left : left + foreground_size] = 1

    if ignore_label is not None:
        labels[:, :, 0, :] = ignore_label
        labels[:, :, -1, :] = ignore_label
        labels[:, :, :, 0] = ignore_label
        labels[:, :, :, -1] = ignore_label

    return scores, labels


def plain_cross_entropy(prob, labels, ignore_label):
    """Per-position mean cross-entropy without class normalization, for comparison."""
    N, C = prob.shape[:2]
    prob = prob.reshape(N, C, -1)
    labels = labels.reshape(N, -1)

    losses = []
    for i in range(N):
        valid = labels[i] != ignore_label
        positions = np.flatnonzero(valid)
        p = prob[i, labels[i][valid], positions]
        losses.append(-np.mean(np.log(p)))
    return float(np.mean(losses))


# --- 2. Main Execution Function ---


def main(config_file=CONFIG_FILE):
    cfg = load_config(config_file)
    loss_param = loss_param_from_config(cfg)
    demo = cfg.get("demo", {})

    np.random.seed(demo.get("seed", 0))
    scores, labels = create_dummy_batch(
        batch_size=demo.get("batch_size", 2),
        H=demo.get("height", 16),
        W=demo.get("width", 16),
        foreground_size=demo.get("foreground_size", 3),
        ignore_label=loss_param.ignore_label,
    )

    loss_layer = SoftmaxWithClassNormalizedLoss.from_param(loss_param)
    loss_layer.setup(scores.shape, labels.shape)

    print("--- Forward Pass ---")
    loss, prob = loss_layer.forward(scores, labels, return_prob=True)
    print(f"Class-normalized loss: {loss:.4f}")
    print(f"Plain cross-entropy:   {plain_cross_entropy(prob, labels, loss_param.ignore_label):.4f}")

    print("--- Backward Pass ---")
    d_L_d_scores = loss_layer.backward(loss_weight=1.0)
    for c in range(loss_param.num_classes):
        mask = labels[:, 0] == c
        print(
            f"Class {c}: {int(mask.sum())} positions, "
            f"total |dL/dZ| = {np.abs(d_L_d_scores[:, 0][mask]).sum():.4f}"
        )

    # A handful of entries: background, foreground and border (ignored) positions
    N, _, H, W = scores.shape
    fg = np.argwhere(labels[0, 0] == 1)[0]
    indices = [(0, 0, H // 2, 1), (0, 1, fg[0], fg[1]), (N - 1, 0, 0, 0)]
    error = check_gradient(loss_layer, scores, labels, indices=indices)
    print(f"Gradient check max abs error: {error:.2e}")


if __name__ == "__main__":
    main()
