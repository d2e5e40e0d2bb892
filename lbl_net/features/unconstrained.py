from __future__ import annotations

from collections.abc import Sequence
from typing import Self

import msgpack  # type: ignore[import-untyped]
import numpy as np

from lbl_net.constants import EPSILON
from lbl_net.features.base import (
    GlobalFeatureStore,
    MinibatchFeatureStore,
    adagrad_step,
)
from lbl_net.features.context import FeatureContextExtractor


class UnconstrainedFeatureStore(GlobalFeatureStore):
    """One dense vector per feature-context id, created on first update."""

    def __init__(self, vector_size: int, extractor: FeatureContextExtractor):
        super().__init__(vector_size)
        self._extractor = extractor
        self._weights: dict[int, np.ndarray] = {}

    def get(self, history: Sequence[int]) -> np.ndarray:
        result = np.zeros(self._vector_size)
        for feature_id in self._extractor.get_feature_context_ids(history):
            if (weights := self._weights.get(feature_id)) is not None:
                result += weights
        return result

    def update(self, history: Sequence[int], values: np.ndarray) -> None:
        for feature_id in self._extractor.get_feature_context_ids(history):
            self._add(feature_id, values)

    def _add(self, feature_id: int, values: np.ndarray) -> None:
        if (weights := self._weights.get(feature_id)) is not None:
            weights += values
        else:
            self._weights[feature_id] = np.array(values, dtype=np.float64)

    def _cast(self, store: MinibatchFeatureStore) -> UnconstrainedFeatureStore:
        if not isinstance(store, UnconstrainedFeatureStore):
            raise TypeError(
                f"Expected UnconstrainedFeatureStore, got {type(store).__name__}."
            )
        return store

    def update_from(self, store: MinibatchFeatureStore) -> None:
        for feature_id, values in self._cast(store)._weights.items():
            self._add(feature_id, values)

    def l2_gradient_update(
        self, sigma: float, minibatch_store: MinibatchFeatureStore | None = None
    ) -> None:
        del minibatch_store
        for weights in self._weights.values():
            weights -= sigma * weights

    def l2_objective(
        self, factor: float, minibatch_store: MinibatchFeatureStore | None = None
    ) -> float:
        del minibatch_store
        return factor * sum(float(np.sum(w**2)) for w in self._weights.values())

    def update_squared(self, store: MinibatchFeatureStore) -> None:
        for feature_id, values in self._cast(store)._weights.items():
            self._add(feature_id, values**2)

    def update_adagrad(
        self,
        gradient_store: MinibatchFeatureStore,
        adagrad_store: GlobalFeatureStore,
        step_size: float,
    ) -> None:
        adagrad = self._cast(adagrad_store)._weights
        for feature_id, gradient in self._cast(gradient_store)._weights.items():
            self._add(feature_id, adagrad_step(gradient, adagrad[feature_id], step_size))

    def size(self) -> int:
        return len(self._weights)

    def clear(self) -> None:
        self._weights.clear()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, UnconstrainedFeatureStore):
            return NotImplemented
        if (
            self._vector_size != other._vector_size
            or self._weights.keys() != other._weights.keys()
        ):
            return False
        return all(
            np.max(np.abs(weights - other._weights[feature_id]), initial=0.0) <= EPSILON
            for feature_id, weights in self._weights.items()
        )

    def serialize(self) -> bytes:
        return msgpack.packb(
            {
                "vector_size": self._vector_size,
                "weights": {
                    feature_id: weights.tolist()
                    for feature_id, weights in self._weights.items()
                },
            }
        )

    @classmethod
    def deserialize(cls, data: bytes, extractor: FeatureContextExtractor) -> Self:
        obj = msgpack.unpackb(data, strict_map_key=False)
        store = cls(obj["vector_size"], extractor)
        store._weights = {
            int(feature_id): np.array(weights, dtype=np.float64)
            for feature_id, weights in obj["weights"].items()
        }
        return store
