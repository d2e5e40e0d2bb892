from __future__ import annotations

import math
from collections.abc import Hashable
from typing import Self, assert_never

import jax
import numpy as np

from lbl_net.config import SoftmaxStrategy
from lbl_net.data.classes import WordToClassIndex
from lbl_net.data.corpus import Corpus
from lbl_net.functions import log_softmax, log_softmax_rows
from lbl_net.model.cache import NormalizerCache
from lbl_net.model.layout import ParameterLayout
from lbl_net.model.metadata import FactoredMetadata
from lbl_net.model.noise import Distribution, WordDistributions
from lbl_net.model.weights import Examples, MinibatchWords, Weights


class FactoredWeights(Weights):
    """Class-factored model: ``P(w | h) = P(c | h) P(w | c, h)``.

    Adds the class projection ``F`` and class bias ``FB``. The word softmax
    only runs over the ``R``/``B`` rows of the target's class.
    """

    metadata: FactoredMetadata

    def _create_layout(self) -> ParameterLayout:
        return ParameterLayout.of(self.config, num_classes=self.index.num_classes)

    def _bind_extra(self, views: dict[str, np.ndarray]) -> None:
        super()._bind_extra(views)
        self.F = views["F"]
        self.FB = views["FB"]

    def _init_caches(self) -> None:
        super()._init_caches()
        self._class_cache = NormalizerCache()
        self._word_cache = NormalizerCache()
        self._class_distribution: Distribution | None = None
        self._word_distributions: WordDistributions | None = None

    @property
    def index(self) -> WordToClassIndex:
        return self.metadata.index

    def initialize(self, corpus: Corpus, key: jax.Array) -> None:
        super().initialize(corpus, key)
        self.FB[:] = self.metadata.class_bias

    def clear_cache(self) -> None:
        super().clear_cache()
        self._class_cache.clear()
        self._word_cache.clear()

    def _class_feature_scores(self, examples: Examples) -> np.ndarray | float:
        del examples
        return 0.0

    def _word_feature_scores(self, examples: Examples, i: int, class_id: int) -> np.ndarray | float:
        del examples, i, class_id
        return 0.0

    def _class_feature_score(self, examples: Examples, class_id: int) -> float:
        del examples, class_id
        return 0.0

    def _word_feature_score(self, examples: Examples, class_id: int, word_id: int) -> float:
        del examples, class_id, word_id
        return 0.0

    def _feature_gradient(
        self,
        gradient: Self,
        examples: Examples,
        i: int,
        class_id: int,
        class_residual: np.ndarray,
        word_residual: np.ndarray,
    ) -> None:
        del gradient, examples, i, class_id, class_residual, word_residual

    def _class_scores(self, examples: Examples, pv: np.ndarray) -> np.ndarray:
        return pv @ self.F.T + self.FB + self._class_feature_scores(examples)

    def _word_scores(self, examples: Examples, i: int, class_id: int, pv: np.ndarray) -> np.ndarray:
        rows = self.index.class_range(class_id)
        return self.R[rows] @ pv + self.B[rows] + self._word_feature_scores(examples, i, class_id)

    def _class_score(self, examples: Examples, pv: np.ndarray, class_id: int) -> float:
        return float(
            self.F[class_id] @ pv
            + self.FB[class_id]
            + self._class_feature_score(examples, class_id)
        )

    def _word_score(
        self, examples: Examples, pv: np.ndarray, class_id: int, word_id: int
    ) -> float:
        return float(
            self.R[word_id] @ pv
            + self.B[word_id]
            + self._word_feature_score(examples, class_id, word_id)
        )

    def _output_gradient(
        self,
        examples: Examples,
        pv: np.ndarray,
        gradient: Self,
        rng: np.random.Generator | None,
    ) -> tuple[float, np.ndarray]:
        match self.config.softmax_strategy:
            case SoftmaxStrategy.FULL:
                return self._full_output_gradient(examples, pv, gradient)
            case SoftmaxStrategy.NCE:
                if rng is None:
                    rng = np.random.default_rng(self.config.seed)
                return self._nce_output_gradient(examples, pv, gradient, rng)
            case never:
                assert_never(never)

    def _full_output_gradient(
        self, examples: Examples, pv: np.ndarray, gradient: Self
    ) -> tuple[float, np.ndarray]:
        class_log_probs, _ = log_softmax_rows(self._class_scores(examples, pv))
        class_residuals = np.exp(class_log_probs)
        back = np.zeros_like(pv)
        objective = 0.0
        for i, word_id in enumerate(examples.words.tolist()):
            class_id = self.index.get_class(word_id)
            rows = self.index.class_range(class_id)
            word_log_probs, _ = log_softmax(self._word_scores(examples, i, class_id, pv[i]))
            log_prob = class_log_probs[i, class_id] + word_log_probs[word_id - rows.start]
            self._check_finite(examples, i, log_prob)
            objective -= log_prob

            class_residuals[i, class_id] -= 1.0
            word_residual = np.exp(word_log_probs)
            word_residual[word_id - rows.start] -= 1.0

            gradient.R[rows] += np.outer(word_residual, pv[i])
            gradient.B[rows] += word_residual
            back[i] += word_residual @ self.R[rows]
            self._feature_gradient(
                gradient, examples, i, class_id, class_residuals[i], word_residual
            )

        gradient.F += class_residuals.T @ pv
        gradient.FB += class_residuals.sum(axis=0)
        back += class_residuals @ self.F
        return objective, back

    def _noise_distributions(self) -> tuple[Distribution, WordDistributions]:
        if self._class_distribution is None or self._word_distributions is None:
            self._class_distribution = Distribution(np.exp(self.metadata.class_bias))
            self._word_distributions = WordDistributions(self.metadata.unigram, self.index)
        return self._class_distribution, self._word_distributions

    def _nce_output_gradient(
        self,
        examples: Examples,
        pv: np.ndarray,
        gradient: Self,
        rng: np.random.Generator,
    ) -> tuple[float, np.ndarray]:
        """Noise-contrastive estimate against ``noise_samples`` draws per example.

        Noise classes follow the class unigram; noise words follow the unigram
        restricted to the target's class.
        """
        k = self.config.noise_samples
        log_k = math.log(k)
        class_distribution, word_distributions = self._noise_distributions()
        back = np.zeros_like(pv)
        objective = 0.0

        def class_log_noise(class_id: int) -> float:
            return log_k + math.log(class_distribution.probs[class_id])

        def word_log_noise(word_id: int) -> float:
            q = word_distributions.probability(word_id)
            return log_k + math.log(q) if q > 0 else -math.inf

        for i, word_id in enumerate(examples.words.tolist()):
            class_id = self.index.get_class(word_id)
            outputs = (
                (self.F, self.FB, class_id, class_distribution.sample(rng, k), class_log_noise),
                (
                    self.R,
                    self.B,
                    word_id,
                    word_distributions.sample(rng, class_id, k),
                    word_log_noise,
                ),
            )
            for (W, b, target, noise, log_noise_of), (gW, gb) in zip(
                outputs, ((gradient.F, gradient.FB), (gradient.R, gradient.B)), strict=True
            ):
                score = float(W[target] @ pv[i] + b[target])
                log_noise = log_noise_of(target)
                log_norm = float(np.logaddexp(score, log_noise))
                objective -= score - log_norm
                prob = math.exp(log_noise - log_norm)
                back[i] -= prob * W[target]
                gW[target] -= prob * pv[i]
                gb[target] -= prob

                for noise_id in noise.tolist():
                    score = float(W[noise_id] @ pv[i] + b[noise_id])
                    log_noise = log_noise_of(noise_id)
                    log_norm = float(np.logaddexp(score, log_noise))
                    objective -= log_noise - log_norm
                    prob = math.exp(score - log_norm)
                    back[i] += prob * W[noise_id]
                    gW[noise_id] += prob * pv[i]
                    gb[noise_id] += prob
        return objective, back

    def _minibatch_words(self, examples: Examples) -> MinibatchWords:
        words = super()._minibatch_words(examples)
        output_words: set[int] = set()
        for class_id in {self.index.get_class(w) for w in examples.words.tolist()}:
            rows = self.index.class_range(class_id)
            output_words.update(range(rows.start, rows.stop))
        words.output_words = output_words
        return words

    def log_likelihoods(self, examples: Examples) -> np.ndarray:
        pv = self.prediction_vectors(examples)
        class_log_probs, _ = log_softmax_rows(self._class_scores(examples, pv))
        result = np.empty(len(examples))
        for i, word_id in enumerate(examples.words.tolist()):
            class_id = self.index.get_class(word_id)
            word_log_probs, _ = log_softmax(self._word_scores(examples, i, class_id, pv[i]))
            result[i] = (
                class_log_probs[i, class_id]
                + word_log_probs[word_id - self.index.get_class_marker(class_id)]
            )
            self._check_finite(examples, i, result[i])
        return result

    def log_probability(self, examples: Examples, *, cache: bool = True) -> float:
        """``log P(word | context)`` for the single example in ``examples``.

        On a cache hit only the target's class and word scores are computed.
        """
        pv_all = self.prediction_vectors(examples)
        pv = pv_all[0]
        word_id = int(examples.words[0])
        class_id = self.index.get_class(word_id)
        offset = word_id - self.index.get_class_marker(class_id)
        class_key = self._cache_key(examples, 0)
        word_key: Hashable = (class_id, class_key)

        class_log_z = self._class_cache.get(class_key) if cache else None
        if class_log_z is None:
            class_scores = self._class_scores(examples, pv_all)[0]
            _, class_log_z = log_softmax(class_scores)
            if cache:
                class_log_z = self._class_cache.insert_if_absent(class_key, class_log_z)
            class_score = float(class_scores[class_id])
        else:
            class_score = self._class_score(examples, pv, class_id)

        word_log_z = self._word_cache.get(word_key) if cache else None
        if word_log_z is None:
            word_scores = self._word_scores(examples, 0, class_id, pv)
            _, word_log_z = log_softmax(word_scores)
            if cache:
                word_log_z = self._word_cache.insert_if_absent(word_key, word_log_z)
            word_score = float(word_scores[offset])
        else:
            word_score = self._word_score(examples, pv, class_id, word_id)

        result = class_score - class_log_z + word_score - word_log_z
        self._check_finite(examples, 0, result)
        return result

    def predict_distribution(self, examples: Examples) -> np.ndarray:
        pv_all = self.prediction_vectors(examples)
        class_log_probs, _ = log_softmax(self._class_scores(examples, pv_all)[0])
        result = np.empty(self.config.vocab_size)
        for class_id in range(self.index.num_classes):
            word_log_probs, _ = log_softmax(
                self._word_scores(examples, 0, class_id, pv_all[0])
            )
            result[self.index.class_range(class_id)] = np.exp(
                class_log_probs[class_id] + word_log_probs
            )
        return result

    def cache_sizes(self) -> tuple[int, int]:
        return len(self._class_cache), len(self._word_cache)
