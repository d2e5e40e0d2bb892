from lbl_net.model.weights import Weights


class L2Regulariser:
    """Weight decay scaled by the share of the corpus a minibatch covers."""

    def __init__(self, *, weights: Weights, corpus_size: int):
        self._weights = weights
        self._corpus_size = corpus_size

    def minibatch_factor(self, minibatch_size: int) -> float:
        return minibatch_size / self._corpus_size if self._corpus_size else 0.0

    def update(self, gradient: Weights | None = None, *, minibatch_size: int) -> float:
        """Shrink the weights and return the penalty of the shrunk weights."""
        factor = self.minibatch_factor(minibatch_size)
        self._weights.l2_gradient_update(factor, gradient)
        self._weights.clear_cache()
        return self._weights.l2_objective(factor, gradient)
