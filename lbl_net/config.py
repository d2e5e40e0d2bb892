from enum import StrEnum
from pathlib import Path
from typing import Self

from pydantic import BaseModel, ConfigDict, model_validator

from lbl_net.exceptions import ConfigurationError


class ModelType(StrEnum):
    BASE = "base"
    FACTORED = "factored"
    MAXENT = "maxent"
    CONDITIONAL = "conditional"


class SoftmaxStrategy(StrEnum):
    """How the output distribution is trained.

    FULL: exact normalisation over the class and within-class vocabularies.
    NCE: noise-contrastive estimation against ``noise_samples`` draws from the
        class and word unigram distributions.
    """

    FULL = "full"
    NCE = "nce"


class ModelConfig(BaseModel):
    model_config = ConfigDict(frozen=True, protected_namespaces=())

    model_type: ModelType = ModelType.FACTORED

    vocab_size: int = 0
    source_vocab_size: int = 0
    word_representation_size: int = 100
    ngram_order: int = 5
    classes: int = 100
    diagonal_contexts: bool = True
    sigmoid: bool = False

    source_window_width: int = -1

    feature_context_size: int = 5
    sparse_features: bool = False
    hash_space: int = 0

    step_size: float = 0.05
    l2_lbl: float = 2.0
    l2_maxent: float = 0.1
    noise_samples: int = 0
    minibatch_size: int = 10000
    iterations: int = 10
    threads: int = 1
    randomise: bool = True
    evaluate_every: int | None = None
    seed: int = 1

    training_file: Path | None = None
    test_file: Path | None = None
    source_file: Path | None = None
    test_source_file: Path | None = None
    class_file: Path | None = None
    model_output_file: Path | None = None

    @property
    def context_width(self) -> int:
        return self.ngram_order - 1

    @property
    def softmax_strategy(self) -> SoftmaxStrategy:
        return SoftmaxStrategy.NCE if self.noise_samples > 0 else SoftmaxStrategy.FULL

    @property
    def factored(self) -> bool:
        return self.model_type != ModelType.BASE

    @property
    def uses_source(self) -> bool:
        return self.model_type == ModelType.CONDITIONAL

    @property
    def uses_features(self) -> bool:
        return self.model_type == ModelType.MAXENT

    @property
    def uses_collisions(self) -> bool:
        return self.uses_features and self.hash_space > 0

    @model_validator(mode="after")
    def validate_dimensions(self) -> Self:
        if self.ngram_order < 1:
            raise ConfigurationError(f"ngram_order must be >= 1, got {self.ngram_order}")
        if self.word_representation_size < 1:
            raise ConfigurationError(
                f"word_representation_size must be >= 1, got {self.word_representation_size}"
            )
        if self.classes < 1:
            raise ConfigurationError(f"classes must be >= 1, got {self.classes}")
        if self.threads < 1:
            raise ConfigurationError(f"threads must be >= 1, got {self.threads}")
        if self.minibatch_size < 1:
            raise ConfigurationError(
                f"minibatch_size must be >= 1, got {self.minibatch_size}"
            )
        if self.vocab_size < 0 or self.source_vocab_size < 0:
            raise ConfigurationError("Vocabulary sizes must be non-negative.")
        if self.noise_samples < 0:
            raise ConfigurationError(
                f"noise_samples must be >= 0, got {self.noise_samples}"
            )
        if self.hash_space < 0:
            raise ConfigurationError(f"hash_space must be >= 0, got {self.hash_space}")
        if self.evaluate_every is not None and self.evaluate_every < 1:
            raise ConfigurationError(
                f"evaluate_every must be >= 1, got {self.evaluate_every}"
            )
        return self

    @model_validator(mode="after")
    def validate_model_type(self) -> Self:
        if self.model_type == ModelType.BASE and self.noise_samples > 0:
            raise ConfigurationError(
                "Noise-contrastive estimation requires a class-factored model."
            )
        if self.model_type == ModelType.MAXENT and self.noise_samples > 0:
            raise ConfigurationError(
                "Noise-contrastive estimation is not supported for maxent models."
            )
        if self.source_window_width >= 0 and not self.uses_source:
            raise ConfigurationError(
                "source_window_width is only valid for conditional models."
            )
        return self

    def with_vocab(self, *, vocab_size: int, source_vocab_size: int | None = None) -> Self:
        return self.model_copy(
            update={
                "vocab_size": vocab_size,
                "source_vocab_size": (
                    self.source_vocab_size
                    if source_vocab_size is None
                    else source_vocab_size
                ),
            }
        )
