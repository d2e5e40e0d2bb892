from typing import Protocol

import numpy as np


class ActivationFn(Protocol):
    def __call__(self, x: np.ndarray) -> np.ndarray: ...

    @staticmethod
    def deriv_from_output(y: np.ndarray) -> np.ndarray: ...


class Identity:
    def __call__(self, x: np.ndarray) -> np.ndarray:
        return x

    @staticmethod
    def deriv_from_output(y: np.ndarray) -> np.ndarray:
        return np.ones_like(y)


class Sigmoid:
    def __call__(self, x: np.ndarray) -> np.ndarray:
        return 1.0 / (1.0 + np.exp(-x))

    @staticmethod
    def deriv_from_output(y: np.ndarray) -> np.ndarray:
        """Derivative expressed in terms of the forward output ``y = sigmoid(x)``."""
        return y * (1.0 - y)


def get_activation_fn(sigmoid: bool) -> ActivationFn:
    return Sigmoid() if sigmoid else Identity()


def log_softmax(scores: np.ndarray) -> tuple[np.ndarray, float]:
    """Return the log-probabilities of ``scores`` and the log-partition value."""
    max_score = np.max(scores)
    log_z = float(max_score + np.log(np.sum(np.exp(scores - max_score))))
    return scores - log_z, log_z


def log_softmax_rows(scores: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    max_scores = np.max(scores, axis=-1, keepdims=True)
    log_z = max_scores + np.log(
        np.sum(np.exp(scores - max_scores), axis=-1, keepdims=True)
    )
    return scores - log_z, log_z[..., 0]


def perplexity(log_likelihood: float, num_tokens: int) -> float:
    return float(np.exp(-log_likelihood / num_tokens))
