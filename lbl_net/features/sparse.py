from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
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


class SparseFeatureStore(GlobalFeatureStore):
    """Feature weights restricted to the output indexes each context was seen with.

    ``feature_indexes`` maps a feature-context id to the positions of the
    output vector it may contribute to. Ids outside the table are ignored on
    both reads and writes.
    """

    def __init__(
        self,
        vector_size: int,
        feature_indexes: Mapping[int, Sequence[int]],
        extractor: FeatureContextExtractor,
    ):
        super().__init__(vector_size)
        self._extractor = extractor
        self._indexes: dict[int, np.ndarray] = {
            int(feature_id): np.asarray(indexes, dtype=np.int64)
            for feature_id, indexes in feature_indexes.items()
        }
        self._weights: dict[int, np.ndarray] = {
            feature_id: np.zeros(indexes.size) for feature_id, indexes in self._indexes.items()
        }

    def get(self, history: Sequence[int]) -> np.ndarray:
        result = np.zeros(self._vector_size)
        for feature_id in self._extractor.get_feature_context_ids(history):
            if (indexes := self._indexes.get(feature_id)) is not None:
                result[indexes] += self._weights[feature_id]
        return result

    def update(self, history: Sequence[int], values: np.ndarray) -> None:
        for feature_id in self._extractor.get_feature_context_ids(history):
            if (indexes := self._indexes.get(feature_id)) is not None:
                self._weights[feature_id] += values[indexes]

    def _cast(self, store: MinibatchFeatureStore) -> SparseFeatureStore:
        if not isinstance(store, SparseFeatureStore):
            raise TypeError(f"Expected SparseFeatureStore, got {type(store).__name__}.")
        return store

    def _merge(
        self,
        store: SparseFeatureStore,
        transform: Callable[[np.ndarray], np.ndarray] | None = None,
    ) -> None:
        for feature_id, values in store._weights.items():
            values = values if transform is None else transform(values)
            if feature_id in self._weights:
                self._weights[feature_id] += values
            else:
                self._indexes[feature_id] = store._indexes[feature_id].copy()
                self._weights[feature_id] = np.array(values, dtype=np.float64)

    def update_from(self, store: MinibatchFeatureStore) -> None:
        self._merge(self._cast(store))

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
        self._merge(self._cast(store), np.square)

    def update_adagrad(
        self,
        gradient_store: MinibatchFeatureStore,
        adagrad_store: GlobalFeatureStore,
        step_size: float,
    ) -> None:
        adagrad = self._cast(adagrad_store)._weights
        for feature_id, gradient in self._cast(gradient_store)._weights.items():
            self._weights[feature_id] += adagrad_step(
                gradient, adagrad[feature_id], step_size
            )

    def size(self) -> int:
        return len(self._weights)

    def clear(self) -> None:
        for weights in self._weights.values():
            weights.fill(0.0)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SparseFeatureStore):
            return NotImplemented
        if (
            self._vector_size != other._vector_size
            or self._weights.keys() != other._weights.keys()
        ):
            return False
        return all(
            np.array_equal(self._indexes[feature_id], other._indexes[feature_id])
            and np.max(np.abs(weights - other._weights[feature_id]), initial=0.0)
            <= EPSILON
            for feature_id, weights in self._weights.items()
        )

    def serialize(self) -> bytes:
        return msgpack.packb(
            {
                "vector_size": self._vector_size,
                "indexes": {k: v.tolist() for k, v in self._indexes.items()},
                "weights": {k: v.tolist() for k, v in self._weights.items()},
            }
        )

    @classmethod
    def deserialize(cls, data: bytes, extractor: FeatureContextExtractor) -> Self:
        obj = msgpack.unpackb(data, strict_map_key=False)
        store = cls(obj["vector_size"], obj["indexes"], extractor)
        for feature_id, weights in obj["weights"].items():
            store._weights[int(feature_id)] = np.array(weights, dtype=np.float64)
        return store
