"""Mappings from word histories to feature-context ids.

A history is the list of preceding word ids, most recent first. Its feature
contexts are the prefixes ``[w1]``, ``[w1, w2]``, ... up to the configured
feature context size.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol, runtime_checkable, TypeAlias

import numpy as np

from lbl_net.data.classes import WordToClassIndex
from lbl_net.data.corpus import ContextProcessor, Corpus

FeatureContext: TypeAlias = tuple[int, ...]


def feature_contexts(history: Sequence[int], feature_context_size: int) -> list[FeatureContext]:
    return [
        tuple(int(word_id) for word_id in history[:size])
        for size in range(1, min(len(history), feature_context_size) + 1)
    ]


@runtime_checkable
class FeatureContextExtractor(Protocol):
    def get_feature_context_ids(self, history: Sequence[int]) -> list[int]: ...


class FeatureContextMapper:
    """Assigns sequential ids to every feature context observed in a corpus.

    Histories whose prefixes were never observed contribute no ids.
    """

    def __init__(
        self, corpus: Corpus, processor: ContextProcessor, feature_context_size: int
    ):
        self._feature_context_size = feature_context_size
        self._ids: dict[FeatureContext, int] = {}
        for position in range(len(corpus)):
            for context in feature_contexts(processor.extract(position), feature_context_size):
                self._ids.setdefault(context, len(self._ids))

    def get_feature_context_ids(self, history: Sequence[int]) -> list[int]:
        return [
            feature_id
            for context in feature_contexts(history, self._feature_context_size)
            if (feature_id := self._ids.get(context)) is not None
        ]

    def __len__(self) -> int:
        return len(self._ids)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FeatureContextMapper):
            return NotImplemented
        return (
            self._feature_context_size == other._feature_context_size
            and self._ids == other._ids
        )


class FeatureContextHasher:
    """Separate id spaces for class features and for each class's word features.

    Class-level ids are assigned over every corpus position; word-level ids for
    class ``c`` only over positions whose target word belongs to ``c``.
    """

    def __init__(
        self,
        corpus: Corpus,
        index: WordToClassIndex,
        processor: ContextProcessor,
        feature_context_size: int,
    ):
        self._feature_context_size = feature_context_size
        self._class_ids: dict[FeatureContext, int] = {}
        self._word_ids: list[dict[FeatureContext, int]] = [
            {} for _ in range(index.num_classes)
        ]
        for position in range(len(corpus)):
            class_id = index.get_class(corpus[position])
            word_ids = self._word_ids[class_id]
            for context in feature_contexts(processor.extract(position), feature_context_size):
                self._class_ids.setdefault(context, len(self._class_ids))
                word_ids.setdefault(context, len(word_ids))

    def get_class_context_ids(self, history: Sequence[int]) -> list[int]:
        return self._lookup(self._class_ids, history)

    def get_word_context_ids(self, class_id: int, history: Sequence[int]) -> list[int]:
        return self._lookup(self._word_ids[class_id], history)

    def _lookup(self, ids: dict[FeatureContext, int], history: Sequence[int]) -> list[int]:
        return [
            feature_id
            for context in feature_contexts(history, self._feature_context_size)
            if (feature_id := ids.get(context)) is not None
        ]

    @property
    def num_class_contexts(self) -> int:
        return len(self._class_ids)

    def num_word_contexts(self, class_id: int) -> int:
        return len(self._word_ids[class_id])

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FeatureContextHasher):
            return NotImplemented
        return (
            self._feature_context_size == other._feature_context_size
            and self._class_ids == other._class_ids
            and self._word_ids == other._word_ids
        )


class ClassContextExtractor:
    def __init__(self, hasher: FeatureContextHasher):
        self._hasher = hasher

    def get_feature_context_ids(self, history: Sequence[int]) -> list[int]:
        return self._hasher.get_class_context_ids(history)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ClassContextExtractor):
            return NotImplemented
        return self._hasher == other._hasher


class WordContextExtractor:
    def __init__(self, class_id: int, hasher: FeatureContextHasher):
        self._class_id = class_id
        self._hasher = hasher

    def get_feature_context_ids(self, history: Sequence[int]) -> list[int]:
        return self._hasher.get_word_context_ids(self._class_id, history)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, WordContextExtractor):
            return NotImplemented
        return self._class_id == other._class_id and self._hasher == other._hasher


class FeatureContextKeyer:
    """Hashes feature contexts into ``[0, hash_space)``.

    ``salt`` separates the key spaces of stores sharing one collision table
    (-1 for class features, the class id for word features).
    """

    def __init__(self, hash_space: int, feature_context_size: int, salt: int = -1):
        if hash_space <= 0:
            raise ValueError(f"hash_space must be positive, got {hash_space}")
        self._hash_space = hash_space
        self._feature_context_size = feature_context_size
        self._salt = salt

    @property
    def hash_space(self) -> int:
        return self._hash_space

    def get_keys(self, history: Sequence[int]) -> np.ndarray:
        return np.array(
            [
                hash((self._salt, context)) % self._hash_space
                for context in feature_contexts(history, self._feature_context_size)
            ],
            dtype=np.int64,
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FeatureContextKeyer):
            return NotImplemented
        return (
            self._hash_space == other._hash_space
            and self._feature_context_size == other._feature_context_size
            and self._salt == other._salt
        )
