from __future__ import annotations

import json
import pickle
import zipfile
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Any, Final, Self, assert_never

import jax
import numpy as np
from loguru import logger

from lbl_net.config import ModelConfig, ModelType
from lbl_net.data.corpus import Corpus, read_corpus, read_parallel_corpus
from lbl_net.data.dictionary import Dictionary
from lbl_net.data.loader import TrainingData
from lbl_net.exceptions import ConfigurationError
from lbl_net.features.initializer import MinibatchStores
from lbl_net.model.conditional import ConditionalWeights
from lbl_net.model.factored import FactoredWeights
from lbl_net.model.maxent import FactoredMaxentWeights
from lbl_net.model.metadata import FactoredMetadata, MaxentMetadata, Metadata
from lbl_net.model.weights import Weights
from lbl_net.train.trainer.trainer import Trainer, TrainingResult, evaluate_perplexity

FORMAT_VERSION: Final[int] = 1
MODEL_ZIP_INTERNAL_PATH: Final = "model.pkl"
DICTIONARY_ZIP_INTERNAL_PATH: Final = "dictionary.msgpack"
SOURCE_DICTIONARY_ZIP_INTERNAL_PATH: Final = "source_dictionary.msgpack"
METADATA_ZIP_INTERNAL_PATH: Final = "metadata.json"

WEIGHTS_BY_TYPE: Final[Mapping[ModelType, type[Weights]]] = {
    ModelType.BASE: Weights,
    ModelType.FACTORED: FactoredWeights,
    ModelType.MAXENT: FactoredMaxentWeights,
    ModelType.CONDITIONAL: ConditionalWeights,
}


def create_metadata(data: TrainingData) -> Metadata:
    config = data.config
    match config.model_type:
        case ModelType.BASE:
            return Metadata.create(config, data.assignment.dictionary, data.training_corpus)
        case ModelType.FACTORED | ModelType.CONDITIONAL:
            return FactoredMetadata.create_factored(
                config, data.assignment, data.training_corpus
            )
        case ModelType.MAXENT:
            return MaxentMetadata.create_maxent(config, data.assignment, data.training_corpus)
        case never:
            assert_never(never)


class LanguageModel:
    """Word-level interface over a set of weights and their dictionaries.

    Contexts are given most recent word first.
    """

    @dataclass(frozen=True, kw_only=True)
    class Serialized:
        model_type: ModelType
        config: ModelConfig
        data: np.ndarray
        metadata: Metadata
        stores: MinibatchStores | None = None

    def __init__(self, weights: Weights, *, source_dictionary: Dictionary | None = None):
        if weights.config.uses_source and source_dictionary is None:
            raise ConfigurationError("Conditional models require a source dictionary.")
        self._weights = weights
        self._source_dictionary = source_dictionary

    @classmethod
    def create(cls, data: TrainingData, *, key: jax.Array) -> Self:
        weights = WEIGHTS_BY_TYPE[data.config.model_type].create(
            data.config, create_metadata(data), data.training_corpus, key=key
        )
        return cls(weights, source_dictionary=data.source_dictionary)

    @property
    def weights(self) -> Weights:
        return self._weights

    @property
    def config(self) -> ModelConfig:
        return self._weights.config

    @property
    def dictionary(self) -> Dictionary:
        return self._weights.metadata.dictionary

    @property
    def source_dictionary(self) -> Dictionary | None:
        return self._source_dictionary

    def train(
        self,
        training_corpus: Corpus,
        test_corpus: Corpus | None = None,
        *,
        key: jax.Array,
        model_output_file: Path | None = None,
        quiet: bool = False,
    ) -> TrainingResult:
        output = model_output_file or self.config.model_output_file
        if isinstance(self._weights.metadata, MaxentMetadata):
            self._weights.metadata.attach_corpus(training_corpus)
        trainer = Trainer(
            config=self.config,
            weights=self._weights,
            training_corpus=training_corpus,
            test_corpus=test_corpus,
            key=key,
            model_checkpoint_path=output,
            save=None if output is None else lambda: self.dump(output),
            quiet=quiet,
        )
        return trainer.train()

    def evaluate(self, corpus: Corpus) -> float:
        """Perplexity of ``corpus``."""
        return evaluate_perplexity(self._weights, corpus)

    def read_corpus(self, path: Path, source_path: Path | None = None) -> Corpus:
        """Read ``path`` against the model's (frozen) dictionaries."""
        if self._source_dictionary is None:
            return read_corpus(path, self.dictionary)
        if source_path is None:
            raise ConfigurationError("Conditional models require a source file.")
        return read_parallel_corpus(path, source_path, self.dictionary, self._source_dictionary)

    def _source_ids(self, source: Sequence[str] | None) -> list[int] | None:
        if source is None:
            return None
        if self._source_dictionary is None:
            raise ConfigurationError("Source words given to a model without a source side.")
        return [self._source_dictionary.lookup(word) for word in source]

    def log_probability(
        self,
        word: str,
        context: Sequence[str],
        source: Sequence[str] | None = None,
        target_index: int = -1,
        sentence_length: int | None = None,
    ) -> float:
        """Natural-log ``P(word | context[, source])``.

        ``sentence_length`` is the target sentence length including ``</s>``;
        when omitted the source and target are assumed to be of equal length.
        """
        source_ids = self._source_ids(source)
        length_ratio = 1.0
        if source_ids is not None and sentence_length:
            length_ratio = len(source_ids) / sentence_length
        examples = self._weights.single_example(
            self.dictionary.lookup(word),
            [self.dictionary.lookup(w) for w in context],
            source=source_ids,
            target_index=target_index,
            length_ratio=length_ratio,
        )
        return self._weights.log_probability(examples)

    def predict_distribution(
        self,
        context: Sequence[str],
        source: Sequence[str] | None = None,
        target_index: int = -1,
        sentence_length: int | None = None,
    ) -> np.ndarray:
        """``P(w | context)`` for every word id ``w``."""
        source_ids = self._source_ids(source)
        length_ratio = 1.0
        if source_ids is not None and sentence_length:
            length_ratio = len(source_ids) / sentence_length
        examples = self._weights.single_example(
            self.dictionary.end_id,
            [self.dictionary.lookup(w) for w in context],
            source=source_ids,
            target_index=target_index,
            length_ratio=length_ratio,
        )
        return self._weights.predict_distribution(examples)

    def num_parameters(self) -> int:
        return self._weights.num_parameters()

    def get_word_vectors(self) -> np.ndarray:
        return self._weights.get_word_vectors()

    def clear_cache(self) -> None:
        self._weights.clear_cache()

    def expand_source_vocabulary(self, words: Iterable[str], *, key: jax.Array) -> int:
        """Add unseen source ``words``; returns the number added."""
        if not isinstance(self._weights, ConditionalWeights) or self._source_dictionary is None:
            raise ConfigurationError("Only conditional models have a source vocabulary.")
        size = len(self._source_dictionary)
        self._source_dictionary.immutable = False
        for word in words:
            self._source_dictionary.convert(word)
        self._source_dictionary.freeze()
        added = len(self._source_dictionary) - size
        if added:
            self._weights.expand_source(len(self._source_dictionary), key=key)
        return added

    def _serialized(self) -> LanguageModel.Serialized:
        stores = None
        if isinstance(self._weights, FactoredMaxentWeights):
            stores = (self._weights.U, tuple(self._weights.V))
        return self.Serialized(
            model_type=self.config.model_type,
            config=self.config,
            data=self._weights.data,
            metadata=self._weights.metadata,
            stores=stores,
        )

    def dump(self, path: Path) -> None:
        zip_buffer = BytesIO()
        with zipfile.ZipFile(zip_buffer, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            zf.writestr(MODEL_ZIP_INTERNAL_PATH, pickle.dumps(self._serialized()))
            zf.writestr(DICTIONARY_ZIP_INTERNAL_PATH, self.dictionary.serialize())
            if self._source_dictionary is not None:
                zf.writestr(
                    SOURCE_DICTIONARY_ZIP_INTERNAL_PATH, self._source_dictionary.serialize()
                )
            zf.writestr(
                METADATA_ZIP_INTERNAL_PATH,
                json.dumps(
                    {
                        "format_version": FORMAT_VERSION,
                        "model_type": str(self.config.model_type),
                        "vocab_size": self.config.vocab_size,
                        "num_parameters": self.num_parameters(),
                        "blocks": [block.name for block in self._weights.layout],
                    }
                ).encode("utf-8"),
            )
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as f:
            f.write(zip_buffer.getvalue())
        logger.info(f"Saved model to {path}.")

    @classmethod
    def load(cls, path: Path) -> Self:
        try:
            with zipfile.ZipFile(path, "r") as zf:
                metadata: dict[str, Any] = json.loads(
                    zf.read(METADATA_ZIP_INTERNAL_PATH).decode("utf-8")
                )
                if metadata.get("format_version") != FORMAT_VERSION:
                    raise ConfigurationError(
                        f"Unsupported model format version {metadata.get('format_version')}."
                    )
                serialized = pickle.loads(zf.read(MODEL_ZIP_INTERNAL_PATH))
                dictionary = Dictionary.from_bytes(zf.read(DICTIONARY_ZIP_INTERNAL_PATH))
                source_dictionary = (
                    Dictionary.from_bytes(zf.read(SOURCE_DICTIONARY_ZIP_INTERNAL_PATH))
                    if SOURCE_DICTIONARY_ZIP_INTERNAL_PATH in zf.namelist()
                    else None
                )
        except KeyError as e:
            raise ConfigurationError(
                f"Missing file in zip: {e.args[0]}. Expected {MODEL_ZIP_INTERNAL_PATH},"
                f" {DICTIONARY_ZIP_INTERNAL_PATH} and {METADATA_ZIP_INTERNAL_PATH}"
            ) from e
        except zipfile.BadZipFile as e:
            raise ConfigurationError(f"Invalid model file: {path}") from e

        if not isinstance(serialized, cls.Serialized):
            raise ConfigurationError(f"Invalid serialized model: {type(serialized).__name__}")
        if dictionary.words != serialized.metadata.dictionary.words:
            raise ConfigurationError(f"Dictionary in {path} does not match the model.")

        weights_cls = WEIGHTS_BY_TYPE[serialized.model_type]
        if issubclass(weights_cls, FactoredMaxentWeights):
            weights: Weights = weights_cls(
                serialized.config,
                serialized.metadata,  # type: ignore[arg-type]
                data=serialized.data,
                stores=serialized.stores,
            )
        else:
            weights = weights_cls(serialized.config, serialized.metadata, data=serialized.data)
        logger.info(
            f"Loaded {weights_cls.__name__} with {weights.num_parameters()} parameters"
            f" from {path}."
        )
        return cls(weights, source_dictionary=source_dictionary)
