from __future__ import annotations

import math
from collections.abc import Hashable
from typing import Self

import jax
import numpy as np
from loguru import logger

from lbl_net.model.factored import FactoredWeights
from lbl_net.model.layout import window_block_names
from lbl_net.model.weights import Examples
from lbl_net.rng import gaussian


class ConditionalWeights(FactoredWeights):
    """Factored model whose prediction vector also sums source-word embeddings.

    With a negative ``source_window_width`` (or an unknown target position)
    every source word contributes ``S[s]``. Otherwise only the words within
    ``width`` of the aligned centre contribute, each through its own window
    transform ``T[j - centre + width]``.
    """

    def _bind_extra(self, views: dict[str, np.ndarray]) -> None:
        super()._bind_extra(views)
        self.S = views["S"]
        self.T = [views[name] for name in window_block_names(self.config.source_window_width)]

    def _window(self, examples: Examples, i: int) -> tuple[int, int, int] | None:
        """``(centre, start, end)`` of the source window, or ``None`` for the plain sum."""
        assert examples.sources is not None
        source_length = examples.sources[i].size
        width = self.config.source_window_width
        target_index = -1 if examples.target_indices is None else int(examples.target_indices[i])
        if width < 0 or target_index < 0 or source_length == 0:
            return None
        assert examples.length_ratios is not None
        centre = min(
            math.floor(target_index * float(examples.length_ratios[i]) + 0.5),
            source_length - 1,
        )
        return centre, max(centre - width, 0), min(source_length, centre + width + 1)

    def _transform(self, k: int, rows: np.ndarray) -> np.ndarray:
        return rows * self.T[k] if self.config.diagonal_contexts else rows @ self.T[k].T

    def _source_term(self, examples: Examples) -> np.ndarray | float:
        if examples.sources is None:
            return 0.0
        result = np.zeros((len(examples), self.config.word_representation_size))
        width = self.config.source_window_width
        for i, source in enumerate(examples.sources):
            match self._window(examples, i):
                case None:
                    result[i] = self.S[source].sum(axis=0)
                case (centre, start, end):
                    for j in range(start, end):
                        result[i] += self._transform(j - centre + width, self.S[source[j]])
        return result

    def _source_gradient(self, examples: Examples, back: np.ndarray, gradient: Self) -> None:
        if examples.sources is None:
            return
        width = self.config.source_window_width
        for i, source in enumerate(examples.sources):
            match self._window(examples, i):
                case None:
                    np.add.at(gradient.S, source, back[i])
                case (centre, start, end):
                    for j in range(start, end):
                        k = j - centre + width
                        T = self.T[k]
                        s = self.S[source[j]]
                        if self.config.diagonal_contexts:
                            gradient.S[source[j]] += back[i] * T
                            gradient.T[k] += back[i] * s
                        else:
                            gradient.S[source[j]] += back[i] @ T
                            gradient.T[k] += np.outer(back[i], s)

    def _cache_key(self, examples: Examples, i: int) -> Hashable:
        if examples.sources is None:
            return (examples.context_of(i), None)
        window = self._window(examples, i)
        return (
            examples.context_of(i),
            tuple(examples.sources[i].tolist()),
            None if window is None else window[0],
        )

    def expand_source(self, source_vocab_size: int, *, key: jax.Array) -> None:
        """Grow the source vocabulary to ``source_vocab_size``.

        ``S`` is redrawn from ``key``; every other block keeps its values.
        """
        old_layout, old_data = self._layout, self.data
        self.config = self.config.with_vocab(
            vocab_size=self.config.vocab_size, source_vocab_size=source_vocab_size
        )
        self._layout = self._create_layout()
        self.data = self._layout.relocate(old_layout, old_data)
        self._bind()
        self.S[:] = gaussian(key, self.S.shape)
        self.clear_cache()
        logger.info(
            f"Expanded source vocabulary to {source_vocab_size}; model now has"
            f" {self.num_parameters()} parameters."
        )
