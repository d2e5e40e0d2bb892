from __future__ import annotations

import math
from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path

import numpy as np
from loguru import logger

from lbl_net.constants import END_TOKEN
from lbl_net.data.dictionary import Dictionary
from lbl_net.exceptions import ConfigurationError


class WordToClassIndex:
    """Partition of the word-id space into contiguous class ranges.

    Class ``c`` owns ids ``[markers[c], markers[c + 1])``.
    """

    def __init__(self, markers: Sequence[int]):
        markers_array = np.asarray(markers, dtype=np.int64)
        if markers_array.ndim != 1 or markers_array.size < 2:
            raise ConfigurationError(
                f"Class markers must contain at least two boundaries, got {list(markers)}."
            )
        if markers_array[0] != 0:
            raise ConfigurationError(
                f"Class markers must start at 0, got {int(markers_array[0])}."
            )
        if np.any(np.diff(markers_array) <= 0):
            raise ConfigurationError(
                f"Class markers must be strictly increasing, got {list(markers)}."
            )
        self._markers = markers_array

    @property
    def markers(self) -> np.ndarray:
        return self._markers

    @property
    def num_classes(self) -> int:
        return self._markers.size - 1

    @property
    def vocab_size(self) -> int:
        return int(self._markers[-1])

    def get_class(self, word_id: int) -> int:
        if not 0 <= word_id < self.vocab_size:
            raise ConfigurationError(
                f"Word id {word_id} lies outside the class index range [0, {self.vocab_size})."
            )
        return int(np.searchsorted(self._markers, word_id, side="right")) - 1

    def get_class_marker(self, class_id: int) -> int:
        return int(self._markers[class_id])

    def get_class_size(self, class_id: int) -> int:
        return int(self._markers[class_id + 1] - self._markers[class_id])

    def get_word_index_in_class(self, word_id: int) -> int:
        return word_id - self.get_class_marker(self.get_class(word_id))

    def class_range(self, class_id: int) -> slice:
        return slice(int(self._markers[class_id]), int(self._markers[class_id + 1]))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, WordToClassIndex):
            return NotImplemented
        return np.array_equal(self._markers, other._markers)

    def __repr__(self) -> str:
        return f"WordToClassIndex(markers={self._markers.tolist()})"


@dataclass(frozen=True, kw_only=True)
class ClassAssignment:
    dictionary: Dictionary
    index: WordToClassIndex
    class_bias: np.ndarray


def _read_tokens(lines: Iterable[str]) -> tuple[Counter[str], int]:
    counts: Counter[str] = Counter()
    sentences = 0
    for line in lines:
        counts.update(token for token in line.split() if token != END_TOKEN)
        sentences += 1
    return counts, sentences


def frequency_binning(lines: Iterable[str], num_classes: int) -> ClassAssignment:
    """Bin word types into classes of roughly equal token mass.

    Class 0 is reserved for ``<s>`` and ``</s>``. Words are assigned ids in
    decreasing frequency order so that each class is a contiguous id range.
    """
    if num_classes < 2:
        raise ConfigurationError(
            f"Frequency binning needs at least 2 classes, got {num_classes}."
        )
    counts, eos_count = _read_tokens(lines)
    dictionary = Dictionary()
    total = sum(counts.values())

    markers = [0, 2]
    class_bias = np.zeros(num_classes)
    class_bias[0] = math.log(max(eos_count, 1))

    remaining = total
    bin_size = remaining / (num_classes - 1)
    mass = 0
    for word, count in sorted(counts.items(), key=lambda item: (-item[1], item[0])):
        word_id = dictionary.convert(word)
        mass += count
        if mass > bin_size and len(markers) < num_classes:
            remaining -= mass
            class_bias[len(markers) - 1] = math.log(mass)
            markers.append(word_id + 1)
            bin_size = remaining / max(num_classes - len(markers) + 1, 1)
            mass = 0

    if markers[-1] != len(dictionary):
        class_bias[len(markers) - 1] = math.log(max(mass, 1))
        markers.append(len(dictionary))

    class_bias = class_bias[: len(markers) - 1] - math.log(eos_count + total)
    logger.info(
        f"Binned {len(dictionary)} types in {len(markers) - 1} classes with an average of "
        f"{len(dictionary) / (len(markers) - 1):.2f} types per bin."
    )
    return ClassAssignment(
        dictionary=dictionary,
        index=WordToClassIndex(markers),
        class_bias=class_bias,
    )


def classes_from_file(path: Path) -> ClassAssignment:
    """Read ``class<TAB>word<TAB>count`` lines, grouped by class."""
    dictionary = Dictionary()
    markers = [0, 2]
    masses: list[int] = [0]
    mass = 0
    total = 0
    previous_class: str | None = None
    with open(path) as f:
        for line_number, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                class_label, word, frequency = line.split()
            except ValueError:
                raise ConfigurationError(
                    f"Malformed class file line {line_number} in {path}: {line!r}"
                ) from None
            word_id = dictionary.convert(word)
            if previous_class is not None and class_label != previous_class:
                masses.append(mass)
                markers.append(word_id)
                mass = 0
            mass += int(frequency)
            total += int(frequency)
            previous_class = class_label

    if previous_class is None:
        raise ConfigurationError(f"Class file {path} is empty.")
    masses.append(mass)
    markers.append(len(dictionary))

    log_total = math.log(total)
    class_bias = np.array(
        [(math.log(m) if m > 0 else 0.0) - log_total for m in masses]
    )
    logger.info(
        f"Read {len(dictionary)} types in {len(markers) - 1} classes with an average of "
        f"{len(dictionary) / (len(markers) - 1):.2f} types per bin."
    )
    return ClassAssignment(
        dictionary=dictionary,
        index=WordToClassIndex(markers),
        class_bias=class_bias,
    )


def single_class(dictionary: Dictionary) -> ClassAssignment:
    return ClassAssignment(
        dictionary=dictionary,
        index=WordToClassIndex([0, len(dictionary)]),
        class_bias=np.zeros(1),
    )
