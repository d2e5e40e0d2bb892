from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence

import numpy as np


class MinibatchFeatureStore(ABC):
    """Feature weights addressed by a word history (most recent first).

    Minibatch stores collect one worker's gradient contributions; they are
    merged into the shared gradient with :meth:`update_from`.
    """

    def __init__(self, vector_size: int):
        self._vector_size = vector_size

    @property
    def vector_size(self) -> int:
        return self._vector_size

    @abstractmethod
    def get(self, history: Sequence[int]) -> np.ndarray: ...

    @abstractmethod
    def update(self, history: Sequence[int], values: np.ndarray) -> None: ...

    @abstractmethod
    def update_from(self, store: MinibatchFeatureStore) -> None: ...

    @abstractmethod
    def size(self) -> int: ...

    @abstractmethod
    def clear(self) -> None: ...


class GlobalFeatureStore(MinibatchFeatureStore):
    """A store holding model weights or AdaGrad accumulators.

    Operations that take a ``minibatch_store`` may restrict themselves to the
    entries that minibatch touched; stores that do not need it ignore it.
    """

    @abstractmethod
    def l2_gradient_update(
        self, sigma: float, minibatch_store: MinibatchFeatureStore | None = None
    ) -> None: ...

    @abstractmethod
    def l2_objective(
        self, factor: float, minibatch_store: MinibatchFeatureStore | None = None
    ) -> float: ...

    @abstractmethod
    def update_squared(self, store: MinibatchFeatureStore) -> None: ...

    @abstractmethod
    def update_adagrad(
        self,
        gradient_store: MinibatchFeatureStore,
        adagrad_store: GlobalFeatureStore,
        step_size: float,
    ) -> None: ...

    @abstractmethod
    def serialize(self) -> bytes: ...


def adagrad_step(
    gradient: np.ndarray, adagrad: np.ndarray, step_size: float
) -> np.ndarray:
    """``-step_size * gradient / sqrt(adagrad)`` where the accumulator is non-zero."""
    update = np.zeros_like(gradient)
    mask = adagrad != 0
    update[mask] = -step_size * gradient[mask] / np.sqrt(adagrad[mask])
    return update
