from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Self

import numpy as np
from loguru import logger

from lbl_net.config import ModelConfig
from lbl_net.data.classes import ClassAssignment, WordToClassIndex
from lbl_net.data.corpus import ContextProcessor, Corpus
from lbl_net.data.dictionary import Dictionary
from lbl_net.features.context import FeatureContextHasher, FeatureContextMapper
from lbl_net.features.matcher import FeatureMatcher


def unigram_distribution(corpus: Corpus, vocab_size: int) -> np.ndarray:
    counts = corpus.unigram_counts(vocab_size)
    total = counts.sum()
    return counts / total if total > 0 else counts


@dataclass(kw_only=True, eq=False)
class Metadata:
    """Corpus statistics a model needs besides its weights."""

    config: ModelConfig
    dictionary: Dictionary
    unigram: np.ndarray

    @classmethod
    def create(cls, config: ModelConfig, dictionary: Dictionary, corpus: Corpus) -> Self:
        return cls(
            config=config,
            dictionary=dictionary,
            unigram=unigram_distribution(corpus, config.vocab_size),
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Metadata):
            return NotImplemented
        return (
            self.config == other.config
            and self.dictionary.words == other.dictionary.words
            and np.allclose(self.unigram, other.unigram)
        )


@dataclass(kw_only=True, eq=False)
class FactoredMetadata(Metadata):
    index: WordToClassIndex
    class_bias: np.ndarray

    @classmethod
    def create_factored(
        cls, config: ModelConfig, assignment: ClassAssignment, corpus: Corpus
    ) -> Self:
        return cls(
            config=config,
            dictionary=assignment.dictionary,
            unigram=unigram_distribution(corpus, config.vocab_size),
            index=assignment.index,
            class_bias=np.asarray(assignment.class_bias, dtype=np.float64),
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FactoredMetadata):
            return NotImplemented
        return (
            super().__eq__(other)
            and self.index == other.index
            and np.allclose(self.class_bias, other.class_bias)
        )


@dataclass(kw_only=True, eq=False)
class MaxentMetadata(FactoredMetadata):
    """Adds the feature-context tables built from the training corpus.

    Only the tables the configured store kind needs are populated. The matcher
    references the training corpus and is not persisted.
    """

    hasher: FeatureContextHasher | None = None
    mapper: FeatureContextMapper | None = None
    matcher: FeatureMatcher | None = field(default=None, repr=False)

    @classmethod
    def create_maxent(
        cls, config: ModelConfig, assignment: ClassAssignment, corpus: Corpus
    ) -> Self:
        metadata = cls.create_factored(config, assignment, corpus)
        if config.uses_collisions:
            logger.info(f"Using collision stores with {config.hash_space} slots.")
            return metadata
        processor = ContextProcessor(
            corpus,
            config.feature_context_size,
            start_id=assignment.dictionary.start_id,
            end_id=assignment.dictionary.end_id,
        )
        if config.sparse_features:
            metadata.mapper = FeatureContextMapper(
                corpus, processor, config.feature_context_size
            )
            metadata.matcher = FeatureMatcher(
                corpus, metadata.index, processor, metadata.mapper
            )
            logger.info(f"Mapped {len(metadata.mapper)} feature contexts.")
        else:
            metadata.hasher = FeatureContextHasher(
                corpus, metadata.index, processor, config.feature_context_size
            )
            logger.info(
                f"Hashed {metadata.hasher.num_class_contexts} class feature contexts."
            )
        return metadata

    def attach_corpus(self, corpus: Corpus) -> None:
        """Rebuild the feature matcher of a loaded sparse model for ``corpus``."""
        if self.mapper is None or self.matcher is not None:
            return
        processor = ContextProcessor(
            corpus,
            self.config.feature_context_size,
            start_id=self.dictionary.start_id,
            end_id=self.dictionary.end_id,
        )
        self.matcher = FeatureMatcher(corpus, self.index, processor, self.mapper)

    def __getstate__(self) -> dict[str, Any]:
        state = self.__dict__.copy()
        state["matcher"] = None
        return state

    def __setstate__(self, state: dict[str, Any]) -> None:
        self.__dict__.update(state)
