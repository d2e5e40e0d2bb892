from loguru import logger

from lbl_net.model.weights import Weights


class AdaGrad:
    """Per-parameter step sizes from the running sum of squared gradients.

    The accumulator is an instance of the same weights class in the
    accumulator role, so feature stores are covered with the buffer.
    """

    def __init__(self, *, weights: Weights, step_size: float):
        self._weights = weights
        self._step_size = step_size
        self._accumulator = weights.accumulator_like()
        self._iterations = 0

    @property
    def accumulator(self) -> Weights:
        return self._accumulator

    @property
    def iterations(self) -> int:
        return self._iterations

    def update(self, gradient: Weights) -> None:
        self._accumulator.update_squared(gradient)
        self._weights.update_adagrad(gradient, self._accumulator, self._step_size)
        self._weights.clear_cache()
        self._iterations += 1
        logger.trace(f"AdaGrad update {self._iterations} applied.")

    def report(self) -> str:
        return f"AdaGrad: step_size={self._step_size}, iterations={self._iterations}"
