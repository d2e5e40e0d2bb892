from __future__ import annotations

from collections.abc import Iterable
from typing import TypeAlias

from lbl_net.config import ModelConfig
from lbl_net.data.classes import WordToClassIndex
from lbl_net.features.base import GlobalFeatureStore, MinibatchFeatureStore
from lbl_net.features.collision import (
    CollisionFeatureStore,
    CollisionMinibatchFeatureStore,
    CollisionSpace,
)
from lbl_net.features.context import (
    ClassContextExtractor,
    FeatureContextHasher,
    FeatureContextKeyer,
    FeatureContextMapper,
    WordContextExtractor,
)
from lbl_net.features.matcher import FeatureIndexesPair, FeatureMatcher
from lbl_net.features.sparse import SparseFeatureStore
from lbl_net.features.unconstrained import UnconstrainedFeatureStore

GlobalStores: TypeAlias = tuple[GlobalFeatureStore, list[GlobalFeatureStore]]
MinibatchStores: TypeAlias = tuple[MinibatchFeatureStore, list[MinibatchFeatureStore]]


class FeatureStoreInitializer:
    """Builds the class store ``U`` and per-class word stores ``V[c]``.

    The store kind follows the config: hashed collision stores when
    ``hash_space > 0``, otherwise sparse stores restricted by the feature
    matcher when ``sparse_features`` is set, otherwise unconstrained stores.
    """

    def __init__(
        self,
        config: ModelConfig,
        index: WordToClassIndex,
        *,
        hasher: FeatureContextHasher | None = None,
        mapper: FeatureContextMapper | None = None,
        matcher: FeatureMatcher | None = None,
    ):
        self._config = config
        self._index = index
        self._hasher = hasher
        self._mapper = mapper
        self._matcher = matcher
        if config.uses_collisions:
            self._class_keyer = FeatureContextKeyer(
                config.hash_space, config.feature_context_size, salt=-1
            )
            self._word_keyers = [
                FeatureContextKeyer(config.hash_space, config.feature_context_size, salt=c)
                for c in range(index.num_classes)
            ]
        elif config.sparse_features:
            if mapper is None or matcher is None:
                raise ValueError("Sparse feature stores need a feature mapper and matcher.")
        elif hasher is None:
            raise ValueError("Unconstrained feature stores need a feature hasher.")

    @property
    def num_classes(self) -> int:
        return self._index.num_classes

    def _sparse(
        self, features: FeatureIndexesPair
    ) -> tuple[SparseFeatureStore, list[SparseFeatureStore]]:
        assert self._mapper is not None
        U = SparseFeatureStore(self.num_classes, features.class_indexes, self._mapper)
        V = [
            SparseFeatureStore(
                self._index.get_class_size(c), features.word_indexes[c], self._mapper
            )
            for c in range(self.num_classes)
        ]
        return U, V

    def _unconstrained(self) -> tuple[UnconstrainedFeatureStore, list[UnconstrainedFeatureStore]]:
        assert self._hasher is not None
        U = UnconstrainedFeatureStore(self.num_classes, ClassContextExtractor(self._hasher))
        V = [
            UnconstrainedFeatureStore(
                self._index.get_class_size(c), WordContextExtractor(c, self._hasher)
            )
            for c in range(self.num_classes)
        ]
        return U, V

    def _collision(self, space: CollisionSpace) -> GlobalStores:
        U = CollisionFeatureStore(self.num_classes, self._class_keyer, space)
        V: list[GlobalFeatureStore] = [
            CollisionFeatureStore(self._index.get_class_size(c), self._word_keyers[c], space)
            for c in range(self.num_classes)
        ]
        return U, V

    def initialize(self) -> GlobalStores:
        """Zeroed weight stores. Sparse stores hold one entry per matched feature."""
        if self._config.uses_collisions:
            return self._collision(CollisionSpace(self._config.hash_space))
        if self._config.sparse_features:
            assert self._matcher is not None
            U, V = self._sparse(self._matcher.get_features())
            return U, list(V)
        U_, V_ = self._unconstrained()
        return U_, list(V_)

    def initialize_accumulator(self) -> GlobalStores:
        return self.initialize()

    def initialize_gradient(self, positions: Iterable[int] | None = None) -> MinibatchStores:
        """Zeroed minibatch stores covering the features reachable from ``positions``."""
        if self._config.uses_collisions:
            return CollisionMinibatchFeatureStore(self.num_classes, self._class_keyer), [
                CollisionMinibatchFeatureStore(
                    self._index.get_class_size(c), self._word_keyers[c]
                )
                for c in range(self.num_classes)
            ]
        if self._config.sparse_features:
            assert self._matcher is not None
            U, V = self._sparse(self._matcher.get_features(positions))
            return U, list(V)
        U_, V_ = self._unconstrained()
        return U_, list(V_)
