from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from typing import Self

import msgpack  # type: ignore[import-untyped]

from lbl_net.constants import END_TOKEN, START_TOKEN
from lbl_net.exceptions import UnknownWordError


@dataclass(slots=True)
class Dictionary:
    """Bidirectional mapping between word strings and dense integer ids.

    ``<s>`` and ``</s>`` always occupy ids 0 and 1. New words are assigned the
    next free id on first sight unless the dictionary has been frozen, in which
    case unseen words raise :class:`UnknownWordError`.
    """

    words: list[str] = field(default_factory=lambda: [START_TOKEN, END_TOKEN])
    word_to_id: dict[str, int] = field(default_factory=dict)
    immutable: bool = False

    def __post_init__(self) -> None:
        if not self.word_to_id:
            self.word_to_id = {word: i for i, word in enumerate(self.words)}

    @classmethod
    def from_words(cls, words: Iterable[str], *, immutable: bool = False) -> Self:
        dictionary = cls()
        for word in words:
            dictionary.convert(word)
        dictionary.immutable = immutable
        return dictionary

    def convert(self, word: str) -> int:
        if (word_id := self.word_to_id.get(word)) is not None:
            return word_id
        if self.immutable:
            raise UnknownWordError(word)
        word_id = len(self.words)
        self.words.append(word)
        self.word_to_id[word] = word_id
        return word_id

    def lookup(self, word: str) -> int:
        try:
            return self.word_to_id[word]
        except KeyError:
            raise UnknownWordError(word) from None

    def freeze(self) -> None:
        self.immutable = True

    @property
    def start_id(self) -> int:
        return self.word_to_id[START_TOKEN]

    @property
    def end_id(self) -> int:
        return self.word_to_id[END_TOKEN]

    def __getitem__(self, word_id: int) -> str:
        return self.words[word_id]

    def __contains__(self, word: object) -> bool:
        return word in self.word_to_id

    def __len__(self) -> int:
        return len(self.words)

    def __iter__(self) -> Iterator[str]:
        return iter(self.words)

    def serialize(self) -> bytes:
        return msgpack.packb({"words": self.words, "immutable": self.immutable})

    @classmethod
    def from_bytes(cls, data: bytes) -> Self:
        obj = msgpack.unpackb(data)
        return cls(words=list(obj["words"]), immutable=obj["immutable"])
