from collections.abc import Callable, Sequence
from typing import Any, TypeAlias

import jax
import numpy as np
import pytest

from lbl_net.config import ModelConfig, ModelType
from lbl_net.data.classes import ClassAssignment, WordToClassIndex
from lbl_net.data.corpus import Corpus
from lbl_net.data.dictionary import Dictionary
from lbl_net.data.loader import TrainingData
from lbl_net.model.model import WEIGHTS_BY_TYPE, create_metadata
from lbl_net.model.weights import Weights

TOY_MARKERS = (0, 2, 4, 5)
TOY_WORDS = (2, 3, 4, 1, 3, 2, 1)
TOY_SOURCES = ((0, 1, 2), (3, 1))

WeightsBuilder: TypeAlias = Callable[..., tuple[Weights, Corpus]]


def toy_assignment() -> ClassAssignment:
    return ClassAssignment(
        dictionary=Dictionary.from_words(["a", "b", "c"]),
        index=WordToClassIndex(TOY_MARKERS),
        class_bias=np.log(np.array([0.25, 0.5, 0.25])),
    )


def build_weights(
    model_type: ModelType = ModelType.FACTORED,
    *,
    words: Sequence[int] = TOY_WORDS,
    seed: int = 0,
    **overrides: Any,
) -> tuple[Weights, Corpus]:
    uses_source = model_type == ModelType.CONDITIONAL
    corpus = Corpus(
        words=np.array(words, dtype=np.int64),
        sources=TOY_SOURCES if uses_source else None,
    )
    settings: dict[str, Any] = {
        "model_type": model_type,
        "vocab_size": 5,
        "source_vocab_size": 4 if uses_source else 0,
        "word_representation_size": 3,
        "ngram_order": 3,
        "classes": 3,
        "feature_context_size": 2,
    }
    config = ModelConfig(**(settings | overrides))
    data = TrainingData(config=config, assignment=toy_assignment(), training_corpus=corpus)
    weights = WEIGHTS_BY_TYPE[model_type].create(
        config, create_metadata(data), corpus, key=jax.random.PRNGKey(seed)
    )
    return weights, corpus


@pytest.fixture
def weights_builder() -> WeightsBuilder:
    return build_weights


@pytest.fixture
def toy_sentences() -> list[list[str]]:
    return [
        ["the", "cat", "sat", "on", "the", "mat"],
        ["the", "dog", "sat", "on", "the", "log"],
        ["a", "cat", "saw", "the", "dog"],
        ["the", "dog", "saw", "a", "cat", "on", "the", "mat"],
    ]
