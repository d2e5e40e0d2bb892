from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from functools import cached_property
from pathlib import Path

import numpy as np
from loguru import logger

from lbl_net.constants import END_ID, START_ID
from lbl_net.data.dictionary import Dictionary
from lbl_net.exceptions import ConfigurationError


@dataclass(frozen=True, eq=False)
class Corpus:
    """Ordered target word ids, optionally paired with one source sentence per
    target sentence. Every target sentence is terminated by ``end_id``.
    """

    words: np.ndarray
    sources: tuple[np.ndarray, ...] | None = None
    end_id: int = END_ID

    def __post_init__(self) -> None:
        object.__setattr__(self, "words", np.asarray(self.words, dtype=np.int64))
        if self.sources is not None:
            object.__setattr__(
                self,
                "sources",
                tuple(np.asarray(source, dtype=np.int64) for source in self.sources),
            )
            if len(self.sources) != self.num_sentences:
                raise ConfigurationError(
                    f"Corpus has {self.num_sentences} target sentences but "
                    f"{len(self.sources)} source sentences."
                )

    def __len__(self) -> int:
        return int(self.words.shape[0])

    def __getitem__(self, position: int) -> int:
        return int(self.words[position])

    @cached_property
    def _sentence_layout(self) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        if len(self) == 0:
            empty = np.zeros(0, dtype=np.int64)
            return empty, empty, empty
        ends = np.flatnonzero(self.words == self.end_id)
        if ends.size == 0 or ends[-1] != len(self) - 1:
            ends = np.append(ends, len(self) - 1)
        starts = np.concatenate(([0], ends[:-1] + 1)).astype(np.int64)
        lengths = ends - starts + 1
        sentence_ids = np.repeat(np.arange(starts.size), lengths)
        return starts, lengths, sentence_ids

    @property
    def num_sentences(self) -> int:
        return int(self._sentence_layout[0].size)

    def sentence_id(self, position: int) -> int:
        return int(self._sentence_layout[2][position])

    def target_index(self, position: int) -> int:
        return position - int(self._sentence_layout[0][self.sentence_id(position)])

    def sentence_length(self, position: int) -> int:
        return int(self._sentence_layout[1][self.sentence_id(position)])

    def source(self, position: int) -> np.ndarray | None:
        if self.sources is None:
            return None
        return self.sources[self.sentence_id(position)]

    def unigram_counts(self, vocab_size: int) -> np.ndarray:
        return np.bincount(self.words, minlength=vocab_size).astype(np.float64)


class ContextProcessor:
    """Extracts the ``context_width`` preceding word ids for a corpus position,
    most recent first, substituting ``start_id`` once the history reaches the
    beginning of the corpus or crosses a sentence end.
    """

    def __init__(
        self,
        corpus: Corpus,
        context_width: int,
        start_id: int = START_ID,
        end_id: int = END_ID,
    ):
        self._corpus = corpus
        self._context_width = context_width
        self._start_id = start_id
        self._end_id = end_id

    @property
    def context_width(self) -> int:
        return self._context_width

    def extract(self, position: int) -> list[int]:
        words = self._corpus.words
        context: list[int] = []
        sentence_start = position == 0 or words[position - 1] == self._end_id
        for i in range(1, self._context_width + 1):
            if sentence_start:
                context.append(self._start_id)
                continue
            word_id = int(words[position - i])
            context.append(word_id)
            sentence_start = position - i == 0 or words[position - i - 1] == self._end_id
        return context

    def extract_many(self, positions: Iterable[int]) -> np.ndarray:
        contexts = [self.extract(int(position)) for position in positions]
        return np.array(contexts, dtype=np.int64).reshape(
            len(contexts), self._context_width
        )


def _sentences(path: Path) -> Iterable[list[str]]:
    with open(path) as f:
        for line in f:
            yield line.split()


def read_corpus(path: Path, dictionary: Dictionary) -> Corpus:
    """Read whitespace-tokenised sentences, one per line, appending ``</s>``.

    Words unseen by a frozen dictionary raise ``UnknownWordError``.
    """
    words: list[int] = []
    for tokens in _sentences(path):
        words.extend(dictionary.convert(token) for token in tokens)
        words.append(dictionary.end_id)
    logger.info(f"Read {len(words)} tokens from {path}.")
    return Corpus(words=np.array(words, dtype=np.int64), end_id=dictionary.end_id)


def read_source_sentences(path: Path, dictionary: Dictionary) -> tuple[np.ndarray, ...]:
    return tuple(
        np.array([dictionary.convert(token) for token in tokens], dtype=np.int64)
        for tokens in _sentences(path)
    )


def read_parallel_corpus(
    target_path: Path,
    source_path: Path,
    target_dictionary: Dictionary,
    source_dictionary: Dictionary,
) -> Corpus:
    target = read_corpus(target_path, target_dictionary)
    sources = read_source_sentences(source_path, source_dictionary)
    return Corpus(words=target.words, sources=sources, end_id=target.end_id)


def corpus_from_sentences(
    sentences: Sequence[Sequence[str]],
    dictionary: Dictionary,
    sources: Sequence[Sequence[str]] | None = None,
    source_dictionary: Dictionary | None = None,
) -> Corpus:
    words: list[int] = []
    for sentence in sentences:
        words.extend(dictionary.convert(token) for token in sentence)
        words.append(dictionary.end_id)
    source_ids = None
    if sources is not None:
        if source_dictionary is None:
            raise ConfigurationError("A source dictionary is required for source sentences.")
        source_ids = tuple(
            np.array([source_dictionary.convert(token) for token in source], dtype=np.int64)
            for source in sources
        )
    return Corpus(words=np.array(words, dtype=np.int64), sources=source_ids, end_id=dictionary.end_id)
