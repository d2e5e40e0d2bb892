"""Feature stores backed by one fixed-size hashed weight table.

A feature context hashed to ``key`` owns the slots
``(key + i) % hash_space`` for ``i`` in ``range(vector_size)``. Different
contexts (and different stores sharing a :class:`CollisionSpace`) may collide.
"""

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
from lbl_net.features.context import FeatureContextKeyer


class CollisionSpace:
    def __init__(self, hash_space: int):
        self.weights = np.zeros(hash_space)

    @property
    def hash_space(self) -> int:
        return int(self.weights.shape[0])

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CollisionSpace):
            return NotImplemented
        return self.weights.shape == other.weights.shape and bool(
            np.all(np.abs(self.weights - other.weights) <= EPSILON)
        )


def _slots(keyer: FeatureContextKeyer, history: Sequence[int], vector_size: int) -> np.ndarray:
    keys = keyer.get_keys(history)
    return (keys[:, None] + np.arange(vector_size)[None, :]) % keyer.hash_space


class CollisionMinibatchFeatureStore(MinibatchFeatureStore):
    """Gradient contributions keyed by collision-table slot."""

    def __init__(self, vector_size: int, keyer: FeatureContextKeyer):
        super().__init__(vector_size)
        self._keyer = keyer
        self._values: dict[int, float] = {}

    @property
    def values(self) -> dict[int, float]:
        return self._values

    def get(self, history: Sequence[int]) -> np.ndarray:
        slots = _slots(self._keyer, history, self._vector_size)
        result = np.zeros(self._vector_size)
        for row in slots:
            result += [self._values.get(int(slot), 0.0) for slot in row]
        return result

    def update(self, history: Sequence[int], values: np.ndarray) -> None:
        for row in _slots(self._keyer, history, self._vector_size):
            for slot, value in zip(row.tolist(), values.tolist(), strict=True):
                self._values[slot] = self._values.get(slot, 0.0) + value

    def update_from(self, store: MinibatchFeatureStore) -> None:
        if not isinstance(store, CollisionMinibatchFeatureStore):
            raise TypeError(
                f"Expected CollisionMinibatchFeatureStore, got {type(store).__name__}."
            )
        for slot, value in store._values.items():
            self._values[slot] = self._values.get(slot, 0.0) + value

    def size(self) -> int:
        return len(self._values)

    def clear(self) -> None:
        self._values.clear()


class CollisionFeatureStore(GlobalFeatureStore):
    """A view onto a shared :class:`CollisionSpace`.

    L2 and AdaGrad only visit the slots present in the given minibatch store,
    so a minibatch store is required wherever the interface accepts one.
    """

    def __init__(self, vector_size: int, keyer: FeatureContextKeyer, space: CollisionSpace):
        if keyer.hash_space != space.hash_space:
            raise ValueError(
                f"Keyer hash space {keyer.hash_space} does not match collision space "
                f"{space.hash_space}."
            )
        super().__init__(vector_size)
        self._keyer = keyer
        self._space = space

    @property
    def space(self) -> CollisionSpace:
        return self._space

    def get(self, history: Sequence[int]) -> np.ndarray:
        return self._space.weights[_slots(self._keyer, history, self._vector_size)].sum(
            axis=0
        )

    def update(self, history: Sequence[int], values: np.ndarray) -> None:
        slots = _slots(self._keyer, history, self._vector_size)
        np.add.at(self._space.weights, slots, np.broadcast_to(values, slots.shape))

    @staticmethod
    def _cast(store: MinibatchFeatureStore | None) -> CollisionMinibatchFeatureStore:
        if not isinstance(store, CollisionMinibatchFeatureStore):
            raise TypeError(
                "Collision stores require a CollisionMinibatchFeatureStore, got "
                f"{type(store).__name__}."
            )
        return store

    def update_from(self, store: MinibatchFeatureStore) -> None:
        values = self._cast(store).values
        if values:
            slots = np.fromiter(values.keys(), dtype=np.int64, count=len(values))
            self._space.weights[slots] += np.fromiter(
                values.values(), dtype=np.float64, count=len(values)
            )

    def _touched(self, store: MinibatchFeatureStore | None) -> np.ndarray:
        values = self._cast(store).values
        return np.fromiter(values.keys(), dtype=np.int64, count=len(values))

    def l2_gradient_update(
        self, sigma: float, minibatch_store: MinibatchFeatureStore | None = None
    ) -> None:
        slots = self._touched(minibatch_store)
        self._space.weights[slots] -= sigma * self._space.weights[slots]

    def l2_objective(
        self, factor: float, minibatch_store: MinibatchFeatureStore | None = None
    ) -> float:
        slots = self._touched(minibatch_store)
        return factor * float(np.sum(self._space.weights[slots] ** 2))

    def update_squared(self, store: MinibatchFeatureStore) -> None:
        values = self._cast(store).values
        for slot, value in values.items():
            self._space.weights[slot] += value * value

    def update_adagrad(
        self,
        gradient_store: MinibatchFeatureStore,
        adagrad_store: GlobalFeatureStore,
        step_size: float,
    ) -> None:
        if not isinstance(adagrad_store, CollisionFeatureStore):
            raise TypeError(
                f"Expected CollisionFeatureStore, got {type(adagrad_store).__name__}."
            )
        values = self._cast(gradient_store).values
        if not values:
            return
        slots = np.fromiter(values.keys(), dtype=np.int64, count=len(values))
        gradient = np.fromiter(values.values(), dtype=np.float64, count=len(values))
        self._space.weights[slots] += adagrad_step(
            gradient, adagrad_store._space.weights[slots], step_size
        )

    def size(self) -> int:
        return self._space.hash_space

    def clear(self) -> None:
        self._space.weights.fill(0.0)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CollisionFeatureStore):
            return NotImplemented
        return (
            self._vector_size == other._vector_size
            and self._keyer == other._keyer
            and self._space == other._space
        )

    def serialize(self) -> bytes:
        return msgpack.packb(
            {"vector_size": self._vector_size, "weights": self._space.weights.tobytes()}
        )

    @classmethod
    def deserialize(
        cls, data: bytes, keyer: FeatureContextKeyer, space: CollisionSpace
    ) -> Self:
        obj = msgpack.unpackb(data)
        space.weights[:] = np.frombuffer(obj["weights"], dtype=np.float64)
        return cls(obj["vector_size"], keyer, space)
