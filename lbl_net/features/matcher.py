from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass
from typing import TypeAlias

from lbl_net.data.classes import WordToClassIndex
from lbl_net.data.corpus import ContextProcessor, Corpus
from lbl_net.features.context import FeatureContextMapper

FeatureIndexes: TypeAlias = dict[int, list[int]]


@dataclass(frozen=True, kw_only=True)
class FeatureIndexesPair:
    """Allowed output indexes per feature-context id.

    ``class_indexes[id]`` lists the classes observed after that context;
    ``word_indexes[c][id]`` lists the in-class word indexes of class ``c``.
    """

    class_indexes: FeatureIndexes
    word_indexes: tuple[FeatureIndexes, ...]


class FeatureMatcher:
    def __init__(
        self,
        corpus: Corpus,
        index: WordToClassIndex,
        processor: ContextProcessor,
        mapper: FeatureContextMapper,
    ):
        self._corpus = corpus
        self._index = index
        self._processor = processor
        self._mapper = mapper

        class_indexes: defaultdict[int, set[int]] = defaultdict(set)
        word_indexes: list[defaultdict[int, set[int]]] = [
            defaultdict(set) for _ in range(index.num_classes)
        ]
        for position in range(len(corpus)):
            word_id = corpus[position]
            class_id = index.get_class(word_id)
            word_index = word_id - index.get_class_marker(class_id)
            for feature_id in self._feature_ids(position):
                class_indexes[feature_id].add(class_id)
                word_indexes[class_id][feature_id].add(word_index)

        self._features = FeatureIndexesPair(
            class_indexes={k: sorted(v) for k, v in class_indexes.items()},
            word_indexes=tuple(
                {k: sorted(v) for k, v in indexes.items()} for indexes in word_indexes
            ),
        )

    def _feature_ids(self, position: int) -> list[int]:
        return self._mapper.get_feature_context_ids(self._processor.extract(position))

    def get_features(self, positions: Iterable[int] | None = None) -> FeatureIndexesPair:
        """All features, or those reachable from the contexts at ``positions``.

        Subset entries carry the full-corpus index lists for each selected
        context, so a context keeps every class that ever followed it.
        """
        if positions is None:
            return self._features
        class_indexes: FeatureIndexes = {}
        word_indexes: list[FeatureIndexes] = [{} for _ in range(self._index.num_classes)]
        for position in positions:
            class_id = self._index.get_class(self._corpus[int(position)])
            for feature_id in self._feature_ids(int(position)):
                class_indexes[feature_id] = self._features.class_indexes[feature_id]
                word_indexes[class_id][feature_id] = self._features.word_indexes[
                    class_id
                ][feature_id]
        return FeatureIndexesPair(
            class_indexes=class_indexes, word_indexes=tuple(word_indexes)
        )
