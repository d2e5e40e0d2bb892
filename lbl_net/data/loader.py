from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from lbl_net.config import ModelConfig
from lbl_net.data.classes import (
    ClassAssignment,
    classes_from_file,
    frequency_binning,
    single_class,
)
from lbl_net.data.corpus import (
    Corpus,
    corpus_from_sentences,
    read_corpus,
    read_parallel_corpus,
)
from lbl_net.data.dictionary import Dictionary
from lbl_net.exceptions import ConfigurationError


@dataclass(frozen=True, kw_only=True)
class TrainingData:
    """Corpora read against one class assignment, with the vocabulary sizes
    filled into ``config``.
    """

    config: ModelConfig
    assignment: ClassAssignment
    training_corpus: Corpus
    test_corpus: Corpus | None = None
    source_dictionary: Dictionary | None = None


def _assignment_from_lines(config: ModelConfig, lines: Iterable[str]) -> ClassAssignment:
    if config.class_file is not None:
        return classes_from_file(config.class_file)
    return frequency_binning(lines, config.classes)


def _finish(
    config: ModelConfig,
    assignment: ClassAssignment,
    training_corpus: Corpus,
    test_corpus: Corpus | None,
    source_dictionary: Dictionary | None,
) -> TrainingData:
    if len(training_corpus) == 0:
        raise ConfigurationError("The training corpus is empty.")
    config = config.with_vocab(
        vocab_size=len(assignment.dictionary),
        source_vocab_size=0 if source_dictionary is None else len(source_dictionary),
    )
    logger.info(
        f"Vocabulary size {config.vocab_size} in {assignment.index.num_classes} classes;"
        f" {len(training_corpus)} training tokens"
        + ("" if test_corpus is None else f", {len(test_corpus)} test tokens")
        + "."
    )
    return TrainingData(
        config=config,
        assignment=assignment,
        training_corpus=training_corpus,
        test_corpus=test_corpus,
        source_dictionary=source_dictionary,
    )


def load_training_data(config: ModelConfig) -> TrainingData:
    """Build the class assignment and read the corpora named in ``config``.

    The factored variants fix the vocabulary from the class assignment before
    reading the training corpus; the base variant grows it from the training
    corpus. The dictionaries are frozen before the test corpus is read.
    """
    if config.training_file is None:
        raise ConfigurationError("A training file is required.")
    if config.uses_source and config.source_file is None:
        raise ConfigurationError("Conditional models require a source file.")

    if config.factored:
        with open(config.training_file) as f:
            assignment = _assignment_from_lines(config, f)
        assignment.dictionary.freeze()
        dictionary = assignment.dictionary
    else:
        dictionary = Dictionary()

    source_dictionary = Dictionary() if config.uses_source else None
    if source_dictionary is not None:
        assert config.source_file is not None
        training_corpus = read_parallel_corpus(
            config.training_file, config.source_file, dictionary, source_dictionary
        )
        source_dictionary.freeze()
    else:
        training_corpus = read_corpus(config.training_file, dictionary)

    if not config.factored:
        dictionary.freeze()
        assignment = single_class(dictionary)

    test_corpus = None
    if config.test_file is not None:
        test_corpus = _read_test_corpus(
            config.test_file, config.test_source_file, dictionary, source_dictionary
        )
    return _finish(config, assignment, training_corpus, test_corpus, source_dictionary)


def _read_test_corpus(
    test_file: Path,
    test_source_file: Path | None,
    dictionary: Dictionary,
    source_dictionary: Dictionary | None,
) -> Corpus:
    if source_dictionary is None:
        return read_corpus(test_file, dictionary)
    if test_source_file is None:
        raise ConfigurationError("Conditional models require a test source file.")
    return read_parallel_corpus(test_file, test_source_file, dictionary, source_dictionary)


def training_data_from_sentences(
    config: ModelConfig,
    sentences: Sequence[Sequence[str]],
    *,
    test_sentences: Sequence[Sequence[str]] | None = None,
    sources: Sequence[Sequence[str]] | None = None,
    test_sources: Sequence[Sequence[str]] | None = None,
) -> TrainingData:
    """The in-memory counterpart of :func:`load_training_data`."""
    if config.uses_source and sources is None:
        raise ConfigurationError("Conditional models require source sentences.")

    if config.factored:
        assignment = _assignment_from_lines(
            config, (" ".join(sentence) for sentence in sentences)
        )
        assignment.dictionary.freeze()
        dictionary = assignment.dictionary
    else:
        dictionary = Dictionary()

    source_dictionary = Dictionary() if config.uses_source else None
    training_corpus = corpus_from_sentences(
        sentences,
        dictionary,
        sources=sources if config.uses_source else None,
        source_dictionary=source_dictionary,
    )
    if source_dictionary is not None:
        source_dictionary.freeze()
    if not config.factored:
        dictionary.freeze()
        assignment = single_class(dictionary)

    test_corpus = None
    if test_sentences is not None:
        test_corpus = corpus_from_sentences(
            test_sentences,
            dictionary,
            sources=test_sources if config.uses_source else None,
            source_dictionary=source_dictionary,
        )
    return _finish(config, assignment, training_corpus, test_corpus, source_dictionary)
