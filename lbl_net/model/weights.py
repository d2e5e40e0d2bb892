from __future__ import annotations

from collections.abc import Hashable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any, Self, TypeAlias

import jax
import numpy as np
from loguru import logger

from lbl_net.config import ModelConfig, SoftmaxStrategy
from lbl_net.data.corpus import ContextProcessor, Corpus
from lbl_net.exceptions import NumericalError
from lbl_net.functions import get_activation_fn, log_softmax, log_softmax_rows
from lbl_net.model.cache import NormalizerCache
from lbl_net.model.layout import ParameterLayout, context_block_names
from lbl_net.model.metadata import Metadata
from lbl_net.rng import gaussian

ObjectiveResult: TypeAlias = tuple[float, "MinibatchWords"]


@dataclass(frozen=True, kw_only=True)
class Examples:
    """A batch of scoring requests: one target word with its context each.

    ``contexts`` has one row per example, most recent word first. The source
    fields are only set for parallel corpora; ``histories`` only for models
    with feature stores.
    """

    words: np.ndarray
    contexts: np.ndarray
    positions: np.ndarray | None = None
    sources: tuple[np.ndarray, ...] | None = None
    target_indices: np.ndarray | None = None
    length_ratios: np.ndarray | None = None
    histories: tuple[tuple[int, ...], ...] | None = None

    def __len__(self) -> int:
        return int(self.words.shape[0])

    @classmethod
    def from_corpus(
        cls, corpus: Corpus, positions: Iterable[int], processor: ContextProcessor
    ) -> Self:
        positions_ = np.asarray(list(positions), dtype=np.int64)
        sources = target_indices = length_ratios = None
        if corpus.sources is not None:
            sources = tuple(corpus.sources[corpus.sentence_id(p)] for p in positions_)
            target_indices = np.array(
                [corpus.target_index(p) for p in positions_], dtype=np.int64
            )
            length_ratios = np.array(
                [
                    source.size / corpus.sentence_length(p)
                    for source, p in zip(sources, positions_, strict=True)
                ]
            )
        return cls(
            words=corpus.words[positions_],
            contexts=processor.extract_many(positions_),
            positions=positions_,
            sources=sources,
            target_indices=target_indices,
            length_ratios=length_ratios,
        )

    @classmethod
    def single(
        cls,
        word_id: int,
        context: Sequence[int],
        context_width: int,
        *,
        start_id: int,
        source: Sequence[int] | None = None,
        target_index: int = -1,
        length_ratio: float = 0.0,
    ) -> Self:
        padded = list(context[:context_width])
        padded += [start_id] * (context_width - len(padded))
        return cls(
            words=np.array([word_id], dtype=np.int64),
            contexts=np.array([padded], dtype=np.int64).reshape(1, context_width),
            sources=None if source is None else (np.asarray(source, dtype=np.int64),),
            target_indices=None if source is None else np.array([target_index]),
            length_ratios=None if source is None else np.array([length_ratio]),
            histories=(tuple(int(w) for w in context),),
        )

    def context_of(self, i: int) -> tuple[int, ...]:
        return tuple(int(w) for w in self.contexts[i])

    def history_of(self, i: int) -> tuple[int, ...]:
        if self.histories is not None:
            return self.histories[i]
        return self.context_of(i)


@dataclass(kw_only=True)
class MinibatchWords:
    """Rows of the row-indexed blocks that a gradient touches.

    ``output_words`` of ``None`` means every output row.
    """

    context_words: set[int] = field(default_factory=set)
    output_words: set[int] | None = field(default_factory=set)
    source_words: set[int] = field(default_factory=set)

    def merge(self, other: MinibatchWords) -> None:
        self.context_words |= other.context_words
        self.source_words |= other.source_words
        if self.output_words is None or other.output_words is None:
            self.output_words = None
        else:
            self.output_words |= other.output_words

    @staticmethod
    def _array(words: Iterable[int]) -> np.ndarray:
        return np.array(sorted(words), dtype=np.int64)

    def rows(self, block: str) -> np.ndarray | None:
        """Touched rows of ``block``, or ``None`` when the whole block is touched."""
        match block:
            case "Q":
                return self._array(self.context_words)
            case "R" | "B":
                return None if self.output_words is None else self._array(self.output_words)
            case "S":
                return self._array(self.source_words)
            case _:
                return None


class Weights:
    """Log-bilinear model over the full vocabulary.

    All parameters live in one flat ``float64`` buffer ``data``; ``Q``, ``R``,
    ``C`` and ``B`` are views into it. The same class serves as model weights,
    gradient and AdaGrad accumulator, depending on how it was constructed.
    """

    def __init__(self, config: ModelConfig, metadata: Metadata, *, data: np.ndarray | None = None):
        self.config = config
        self.metadata = metadata
        self._layout = self._create_layout()
        self.data = self._layout.allocate() if data is None else data
        self._activation = get_activation_fn(config.sigmoid)
        self._bind()
        self._init_caches()

    def _create_layout(self) -> ParameterLayout:
        return ParameterLayout.of(self.config)

    def _bind(self) -> None:
        self._layout.check(self.data)
        views = self._layout.views(self.data)
        self.Q = views["Q"]
        self.R = views["R"]
        self.B = views["B"]
        self.C = [views[name] for name in context_block_names(self.config.context_width)]
        self._bind_extra(views)

    def _bind_extra(self, views: dict[str, np.ndarray]) -> None:
        del views

    def _init_caches(self) -> None:
        self._context_cache = NormalizerCache()

    @property
    def layout(self) -> ParameterLayout:
        return self._layout

    @property
    def context_width(self) -> int:
        return self.config.context_width

    @classmethod
    def create(
        cls, config: ModelConfig, metadata: Metadata, corpus: Corpus, *, key: jax.Array
    ) -> Self:
        """Weights for training: Gaussian draws from ``key`` with the output
        bias set to the add-one smoothed unigram log frequency.
        """
        weights = cls(config, metadata)
        weights.initialize(corpus, key)
        logger.info(
            f"Created {cls.__name__} with vocab size {config.vocab_size}"
            f" and {weights.num_parameters()} parameters."
        )
        return weights

    def initialize(self, corpus: Corpus, key: jax.Array) -> None:
        self.data[:] = gaussian(key, (self._layout.size,))
        counts = corpus.unigram_counts(self.config.vocab_size)
        self.B[:] = np.log((counts + 1.0) / (counts.sum() + counts.size))
        self.clear_cache()

    def zeros_like(self, positions: Iterable[int] | None = None) -> Self:
        """An all-zero instance in the gradient role."""
        del positions
        return type(self)(self.config, self.metadata)

    def accumulator_like(self) -> Self:
        """An all-zero instance in the AdaGrad accumulator role."""
        return type(self)(self.config, self.metadata)

    def reset_gradient(self, positions: Iterable[int] | None = None) -> None:
        del positions
        self.data.fill(0.0)

    def num_parameters(self) -> int:
        return self._layout.size

    def get_word_vectors(self) -> np.ndarray:
        return self.R.copy()

    def processor(self, corpus: Corpus) -> ContextProcessor:
        return ContextProcessor(
            corpus,
            self.context_width,
            start_id=self.metadata.dictionary.start_id,
            end_id=self.metadata.dictionary.end_id,
        )

    def examples(self, corpus: Corpus, positions: Iterable[int]) -> Examples:
        return Examples.from_corpus(corpus, positions, self.processor(corpus))

    def single_example(
        self,
        word_id: int,
        context: Sequence[int],
        *,
        source: Sequence[int] | None = None,
        target_index: int = -1,
        length_ratio: float = 0.0,
    ) -> Examples:
        """One scoring request; ``context`` is most recent first and is padded
        with ``<s>`` to the context width.
        """
        return Examples.single(
            word_id,
            context,
            self.context_width,
            start_id=self.metadata.dictionary.start_id,
            source=source,
            target_index=target_index,
            length_ratio=length_ratio,
        )

    def prediction_vectors(self, examples: Examples) -> np.ndarray:
        """``sum_i C[i] Q[context[i]]`` plus any source term, then the activation."""
        pv = np.zeros((len(examples), self.config.word_representation_size))
        for i, C in enumerate(self.C):
            q = self.Q[examples.contexts[:, i]]
            pv += q * C if self.config.diagonal_contexts else q @ C.T
        pv += self._source_term(examples)
        return self._activation(pv)

    def _source_term(self, examples: Examples) -> np.ndarray | float:
        del examples
        return 0.0

    def _source_gradient(self, examples: Examples, back: np.ndarray, gradient: Self) -> None:
        del examples, back, gradient

    def _context_gradient(self, examples: Examples, back: np.ndarray, gradient: Self) -> None:
        for i, C in enumerate(self.C):
            context_words = examples.contexts[:, i]
            q = self.Q[context_words]
            if self.config.diagonal_contexts:
                gradient.C[i] += np.sum(q * back, axis=0)
                np.add.at(gradient.Q, context_words, back * C)
            else:
                gradient.C[i] += back.T @ q
                np.add.at(gradient.Q, context_words, back @ C)

    def _check_finite(self, examples: Examples, i: int, value: float) -> None:
        if not np.isfinite(value):
            raise NumericalError(
                f"Non-finite log probability {value}",
                position=None if examples.positions is None else int(examples.positions[i]),
                word_id=int(examples.words[i]),
                context=examples.context_of(i),
            )

    def _check_all_finite(self, examples: Examples, log_probs: np.ndarray) -> None:
        if not np.all(np.isfinite(log_probs)):
            self._check_finite(examples, int(np.argmin(np.isfinite(log_probs))), float("nan"))

    def _output_gradient(
        self,
        examples: Examples,
        pv: np.ndarray,
        gradient: Self,
        rng: np.random.Generator | None,
    ) -> tuple[float, np.ndarray]:
        """Add the output-layer gradient; return the objective and ``dObj/dpv``."""
        del rng
        log_probs, _ = log_softmax_rows(pv @ self.R.T + self.B)
        rows = np.arange(len(examples))
        word_log_probs = log_probs[rows, examples.words]
        self._check_all_finite(examples, word_log_probs)
        residuals = np.exp(log_probs)
        residuals[rows, examples.words] -= 1.0
        gradient.R += residuals.T @ pv
        gradient.B += residuals.sum(axis=0)
        return -float(word_log_probs.sum()), residuals @ self.R

    def _minibatch_words(self, examples: Examples) -> MinibatchWords:
        return MinibatchWords(
            context_words=set(np.unique(examples.contexts).tolist()),
            output_words=None,
            source_words=(
                set()
                if examples.sources is None or len(examples.sources) == 0
                else set(np.unique(np.concatenate(examples.sources)).tolist())
            ),
        )

    def accumulate_gradient(
        self,
        corpus: Corpus,
        positions: Iterable[int],
        gradient: Self,
        rng: np.random.Generator | None = None,
    ) -> ObjectiveResult:
        """Add the gradient of the negative log-likelihood at ``positions`` into
        ``gradient``; return the objective and the rows touched.
        """
        examples = self.examples(corpus, positions)
        if len(examples) == 0:
            return 0.0, MinibatchWords()
        pv = self.prediction_vectors(examples)
        objective, back = self._output_gradient(examples, pv, gradient, rng)
        back = back * self._activation.deriv_from_output(pv)
        self._context_gradient(examples, back, gradient)
        self._source_gradient(examples, back, gradient)
        return objective, self._minibatch_words(examples)

    def get_gradient(
        self,
        corpus: Corpus,
        positions: Sequence[int] | np.ndarray,
        rng: np.random.Generator | None = None,
    ) -> tuple[Self, float, MinibatchWords]:
        gradient = self.zeros_like(positions)
        objective, words = self.accumulate_gradient(corpus, positions, gradient, rng)
        return gradient, objective, words

    def log_likelihoods(self, examples: Examples) -> np.ndarray:
        """Exactly normalised ``log P(word | context)`` for every example."""
        pv = self.prediction_vectors(examples)
        log_probs, _ = log_softmax_rows(pv @ self.R.T + self.B)
        result = log_probs[np.arange(len(examples)), examples.words]
        self._check_all_finite(examples, result)
        return result

    def get_objective(
        self,
        corpus: Corpus,
        positions: Sequence[int] | np.ndarray,
        rng: np.random.Generator | None = None,
    ) -> float:
        """The training objective: the negative log-likelihood, or the NCE loss
        over noise drawn from ``rng`` when noise samples are configured.
        """
        if self.config.softmax_strategy == SoftmaxStrategy.NCE:
            objective, _ = self.accumulate_gradient(
                corpus, positions, self.zeros_like(positions), rng
            )
            return objective
        examples = self.examples(corpus, positions)
        if len(examples) == 0:
            return 0.0
        return -float(self.log_likelihoods(examples).sum())

    def check_gradient(
        self,
        corpus: Corpus,
        positions: Sequence[int] | np.ndarray,
        gradient: Weights,
        eps: float,
        *,
        seed: int | None = None,
    ) -> bool:
        """Compare ``gradient`` against central differences for every buffer entry.

        ``seed`` reseeds noise sampling for each objective evaluation so that
        sampled objectives are reproducible.
        """

        def objective() -> float:
            rng = None if seed is None else np.random.default_rng(seed)
            return self.get_objective(corpus, positions, rng)

        for i in range(self._layout.size):
            original = self.data[i]
            self.data[i] = original + eps
            objective_plus = objective()
            self.data[i] = original - eps
            objective_minus = objective()
            self.data[i] = original
            estimate = (objective_plus - objective_minus) / (2 * eps)
            if abs(gradient.data[i] - estimate) > eps:
                logger.debug(
                    f"Gradient check failed at {i}: analytic {gradient.data[i]},"
                    f" estimated {estimate}."
                )
                return False
        return True

    def update(self, gradient: Weights) -> None:
        self.data += gradient.data

    def update_squared(self, gradient: Weights) -> None:
        self.data += gradient.data**2

    def update_adagrad(self, gradient: Weights, adagrad: Weights, step_size: float) -> None:
        mask = adagrad.data != 0
        self.data[mask] -= step_size * gradient.data[mask] / np.sqrt(adagrad.data[mask])

    def sync_update(self, gradient: Weights, words: MinibatchWords) -> None:
        """Add ``gradient`` restricted to the rows in ``words``; dense elsewhere."""
        for block in self._layout:
            rows = words.rows(block.name)
            target = self.data[block.offset : block.end]
            source = gradient.data[block.offset : block.end]
            if rows is None:
                target += source
                continue
            target_view = target.reshape(block.shape)
            source_view = source.reshape(block.shape)
            target_view[rows] += source_view[rows]

    def l2_gradient_update(self, minibatch_factor: float, gradient: Weights | None = None) -> None:
        del gradient
        sigma = minibatch_factor * self.config.step_size * self.config.l2_lbl
        self.data -= sigma * self.data

    def l2_objective(self, minibatch_factor: float, gradient: Weights | None = None) -> float:
        del gradient
        return float(
            0.5 * minibatch_factor * self.config.l2_lbl * np.sum(self.data**2)
        )

    def _cache_key(self, examples: Examples, i: int) -> Hashable:
        return examples.context_of(i)

    def log_probability(self, examples: Examples, *, cache: bool = True) -> float:
        """``log P(word | context)`` for the single example in ``examples``."""
        pv = self.prediction_vectors(examples)[0]
        word_id = int(examples.words[0])
        key = self._cache_key(examples, 0)
        log_z = self._context_cache.get(key) if cache else None
        if log_z is None:
            _, log_z = log_softmax(self.R @ pv + self.B)
            if cache:
                log_z = self._context_cache.insert_if_absent(key, log_z)
        result = float(self.R[word_id] @ pv + self.B[word_id] - log_z)
        self._check_finite(examples, 0, result)
        return result

    def predict_distribution(self, examples: Examples) -> np.ndarray:
        pv = self.prediction_vectors(examples)[0]
        log_probs, _ = log_softmax(self.R @ pv + self.B)
        return np.exp(log_probs)

    def clear_cache(self) -> None:
        self._context_cache.clear()

    def __getstate__(self) -> dict[str, Any]:
        return {
            key: value
            for key, value in self.__dict__.items()
            if key in self._persistent_attributes()
        }

    def _persistent_attributes(self) -> tuple[str, ...]:
        return ("config", "metadata", "_layout", "data")

    def __setstate__(self, state: dict[str, Any]) -> None:
        self.__dict__.update(state)
        self._activation = get_activation_fn(self.config.sigmoid)
        self._bind()
        self._init_caches()

    def __deepcopy__(self, memo: dict[int, Any]) -> Self:
        """Copy the buffer and rebuild the views; metadata is shared."""
        clone = type(self).__new__(type(self))
        state = self.__getstate__()
        state["data"] = self.data.copy()
        clone.__setstate__(self._deepcopy_extra(state, memo))
        return clone

    def _deepcopy_extra(self, state: dict[str, Any], memo: dict[int, Any]) -> dict[str, Any]:
        del memo
        return state

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Weights):
            return NotImplemented
        return (
            type(self) is type(other)
            and self.config == other.config
            and self._layout == other._layout
            and np.array_equal(self.data, other.data)
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}(parameters={self.num_parameters()})"
