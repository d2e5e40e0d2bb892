from __future__ import annotations

import copy
import dataclasses
from collections.abc import Hashable, Iterable, Sequence
from typing import Any, Self

import numpy as np

from lbl_net.config import ModelConfig
from lbl_net.data.corpus import ContextProcessor, Corpus
from lbl_net.features.base import GlobalFeatureStore, MinibatchFeatureStore
from lbl_net.features.initializer import FeatureStoreInitializer, MinibatchStores
from lbl_net.model.factored import FactoredWeights
from lbl_net.model.metadata import MaxentMetadata
from lbl_net.model.weights import Examples, MinibatchWords, Weights


class FactoredMaxentWeights(FactoredWeights):
    """Factored model with direct n-gram features added to the class and word scores.

    ``U`` holds class-level feature weights and ``V[c]`` the word-level weights
    of class ``c``; both are looked up by the word history at each position.
    In the gradient role they are minibatch stores.
    """

    metadata: MaxentMetadata

    def __init__(
        self,
        config: ModelConfig,
        metadata: MaxentMetadata,
        *,
        data: np.ndarray | None = None,
        stores: MinibatchStores | None = None,
    ):
        super().__init__(config, metadata, data=data)
        if stores is None:
            stores = self._initializer().initialize()
        self.U: MinibatchFeatureStore = stores[0]
        self.V: list[MinibatchFeatureStore] = list(stores[1])

    def _initializer(self) -> FeatureStoreInitializer:
        return FeatureStoreInitializer(
            self.config,
            self.index,
            hasher=self.metadata.hasher,
            mapper=self.metadata.mapper,
            matcher=self.metadata.matcher,
        )

    def zeros_like(self, positions: Iterable[int] | None = None) -> Self:
        return type(self)(
            self.config,
            self.metadata,
            stores=self._initializer().initialize_gradient(positions),
        )

    def accumulator_like(self) -> Self:
        return type(self)(
            self.config, self.metadata, stores=self._initializer().initialize_accumulator()
        )

    def reset_gradient(self, positions: Iterable[int] | None = None) -> None:
        super().reset_gradient()
        self.U, self.V = self._initializer().initialize_gradient(positions)

    def examples(self, corpus: Corpus, positions: Iterable[int]) -> Examples:
        examples = super().examples(corpus, positions)
        assert examples.positions is not None
        processor = ContextProcessor(
            corpus,
            self.config.feature_context_size,
            start_id=self.metadata.dictionary.start_id,
            end_id=self.metadata.dictionary.end_id,
        )
        return dataclasses.replace(
            examples,
            histories=tuple(
                tuple(processor.extract(int(position))) for position in examples.positions
            ),
        )

    def single_example(
        self,
        word_id: int,
        context: Sequence[int],
        *,
        source: Sequence[int] | None = None,
        target_index: int = -1,
        length_ratio: float = 0.0,
    ) -> Examples:
        examples = super().single_example(
            word_id,
            context,
            source=source,
            target_index=target_index,
            length_ratio=length_ratio,
        )
        size = self.config.feature_context_size
        history = [int(w) for w in context[:size]]
        history += [self.metadata.dictionary.start_id] * (size - len(history))
        return dataclasses.replace(examples, histories=(tuple(history),))

    def _cache_key(self, examples: Examples, i: int) -> Hashable:
        return (examples.context_of(i), examples.history_of(i))

    def _class_feature_scores(self, examples: Examples) -> np.ndarray | float:
        return np.array(
            [self.U.get(examples.history_of(i)) for i in range(len(examples))]
        ).reshape(len(examples), self.index.num_classes)

    def _word_feature_scores(self, examples: Examples, i: int, class_id: int) -> np.ndarray | float:
        return self.V[class_id].get(examples.history_of(i))

    def _class_feature_score(self, examples: Examples, class_id: int) -> float:
        return float(self.U.get(examples.history_of(0))[class_id])

    def _word_feature_score(self, examples: Examples, class_id: int, word_id: int) -> float:
        offset = word_id - self.index.get_class_marker(class_id)
        return float(self.V[class_id].get(examples.history_of(0))[offset])

    def _feature_gradient(
        self,
        gradient: Self,
        examples: Examples,
        i: int,
        class_id: int,
        class_residual: np.ndarray,
        word_residual: np.ndarray,
    ) -> None:
        history = examples.history_of(i)
        gradient.U.update(history, class_residual)
        gradient.V[class_id].update(history, word_residual)

    def _global_stores(self) -> tuple[GlobalFeatureStore, list[GlobalFeatureStore]]:
        V = [store for store in self.V if isinstance(store, GlobalFeatureStore)]
        if not isinstance(self.U, GlobalFeatureStore) or len(V) != len(self.V):
            raise TypeError("Feature store updates require weights in the model role.")
        return self.U, V

    def update(self, gradient: Weights) -> None:
        assert isinstance(gradient, FactoredMaxentWeights)
        super().update(gradient)
        self.U.update_from(gradient.U)
        for store, gradient_store in zip(self.V, gradient.V, strict=True):
            store.update_from(gradient_store)

    def sync_update(self, gradient: Weights, words: MinibatchWords) -> None:
        assert isinstance(gradient, FactoredMaxentWeights)
        super().sync_update(gradient, words)
        self.U.update_from(gradient.U)
        for store, gradient_store in zip(self.V, gradient.V, strict=True):
            store.update_from(gradient_store)

    def update_squared(self, gradient: Weights) -> None:
        assert isinstance(gradient, FactoredMaxentWeights)
        super().update_squared(gradient)
        U, V = self._global_stores()
        U.update_squared(gradient.U)
        for store, gradient_store in zip(V, gradient.V, strict=True):
            store.update_squared(gradient_store)

    def update_adagrad(self, gradient: Weights, adagrad: Weights, step_size: float) -> None:
        assert isinstance(gradient, FactoredMaxentWeights)
        assert isinstance(adagrad, FactoredMaxentWeights)
        super().update_adagrad(gradient, adagrad, step_size)
        U, V = self._global_stores()
        adagrad_U, adagrad_V = adagrad._global_stores()
        U.update_adagrad(gradient.U, adagrad_U, step_size)
        for store, gradient_store, adagrad_store in zip(V, gradient.V, adagrad_V, strict=True):
            store.update_adagrad(gradient_store, adagrad_store, step_size)

    def l2_gradient_update(self, minibatch_factor: float, gradient: Weights | None = None) -> None:
        super().l2_gradient_update(minibatch_factor)
        sigma = minibatch_factor * self.config.step_size * self.config.l2_maxent
        U, V = self._global_stores()
        gradient_U, gradient_V = self._gradient_stores(gradient)
        U.l2_gradient_update(sigma, gradient_U)
        for store, gradient_store in zip(V, gradient_V, strict=True):
            store.l2_gradient_update(sigma, gradient_store)

    def l2_objective(self, minibatch_factor: float, gradient: Weights | None = None) -> float:
        result = super().l2_objective(minibatch_factor)
        factor = 0.5 * minibatch_factor * self.config.l2_maxent
        U, V = self._global_stores()
        gradient_U, gradient_V = self._gradient_stores(gradient)
        result += U.l2_objective(factor, gradient_U)
        for store, gradient_store in zip(V, gradient_V, strict=True):
            result += store.l2_objective(factor, gradient_store)
        return result

    def _gradient_stores(
        self, gradient: Weights | None
    ) -> tuple[MinibatchFeatureStore | None, list[MinibatchFeatureStore | None]]:
        if gradient is None:
            return None, [None] * len(self.V)
        assert isinstance(gradient, FactoredMaxentWeights)
        return gradient.U, list(gradient.V)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FactoredMaxentWeights):
            return NotImplemented
        return (
            super().__eq__(other)
            and self.U == other.U
            and all(a == b for a, b in zip(self.V, other.V, strict=True))
        )

    def _persistent_attributes(self) -> tuple[str, ...]:
        return (*super()._persistent_attributes(), "U", "V")

    def _deepcopy_extra(self, state: dict[str, Any], memo: dict[int, Any]) -> dict[str, Any]:
        for shared in (self.metadata, self.metadata.hasher, self.metadata.mapper):
            if shared is not None:
                memo[id(shared)] = shared
        state["U"], state["V"] = copy.deepcopy((self.U, self.V), memo)
        return state
