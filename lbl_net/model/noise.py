from collections.abc import Sequence

import numpy as np

from lbl_net.data.classes import WordToClassIndex


class Distribution:
    """Categorical sampler over ``probs`` that reuses a precomputed CDF."""

    def __init__(self, probs: np.ndarray):
        weights = np.asarray(probs, dtype=np.float64)
        if weights.ndim != 1 or weights.size == 0 or np.any(weights < 0):
            raise ValueError("Distribution weights must be a non-empty, non-negative vector.")
        total = weights.sum()
        if total <= 0:
            raise ValueError("Distribution weights must have positive mass.")
        self._probs = weights / total
        self._cdf = np.cumsum(self._probs)

    @property
    def probs(self) -> np.ndarray:
        return self._probs

    def sample(self, rng: np.random.Generator, size: int | Sequence[int] = ()) -> np.ndarray:
        draws = rng.random(size) * self._cdf[-1]
        return np.minimum(
            np.searchsorted(self._cdf, draws, side="right"), self._probs.size - 1
        )


class WordDistributions:
    """One within-class unigram sampler per class; samples are global word ids."""

    def __init__(self, unigram: np.ndarray, index: WordToClassIndex):
        self._index = index
        self._distributions: list[Distribution | None] = []
        for class_id in range(index.num_classes):
            mass = unigram[index.class_range(class_id)]
            self._distributions.append(Distribution(mass) if mass.sum() > 0 else None)

    def sample(
        self, rng: np.random.Generator, class_id: int, size: int | Sequence[int] = ()
    ) -> np.ndarray:
        distribution = self._distributions[class_id]
        if distribution is None:
            raise ValueError(f"Class {class_id} has no unigram mass to sample from.")
        return self._index.get_class_marker(class_id) + distribution.sample(rng, size)

    def probability(self, word_id: int) -> float:
        class_id = self._index.get_class(word_id)
        distribution = self._distributions[class_id]
        if distribution is None:
            return 0.0
        return float(distribution.probs[word_id - self._index.get_class_marker(class_id)])
