from __future__ import annotations

import math
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from typing import Final

import numpy as np

from lbl_net.config import ModelConfig
from lbl_net.exceptions import ConfigurationError

DTYPE: Final = np.float64


@dataclass(frozen=True, slots=True)
class Block:
    name: str
    offset: int
    shape: tuple[int, ...]

    @property
    def size(self) -> int:
        return math.prod(self.shape)

    @property
    def end(self) -> int:
        return self.offset + self.size


def context_block_names(context_width: int) -> tuple[str, ...]:
    return tuple(f"C{i}" for i in range(context_width))


def window_block_names(window: int) -> tuple[str, ...]:
    return tuple(f"T{i}" for i in range(2 * window + 1)) if window >= 0 else ()


class ParameterLayout:
    """Offsets of every named parameter block within one flat buffer.

    The order is fixed and part of the persisted format: source embeddings and
    source window transforms first (conditional models only), then context
    embeddings ``Q``, output embeddings ``R``, context transforms ``C*``, output
    bias ``B`` and, for class-factored models, the class projection ``F`` and
    class bias ``FB``.
    """

    def __init__(self, blocks: Sequence[tuple[str, tuple[int, ...]]]):
        offset = 0
        laid_out = []
        for name, shape in blocks:
            block = Block(name=name, offset=offset, shape=tuple(shape))
            laid_out.append(block)
            offset = block.end
        self._blocks = tuple(laid_out)
        self._by_name = {block.name: block for block in self._blocks}
        if len(self._by_name) != len(self._blocks):
            raise ConfigurationError("Duplicate parameter block names in layout.")
        self._size = offset

    @classmethod
    def of(cls, config: ModelConfig, *, num_classes: int | None = None) -> ParameterLayout:
        width = config.word_representation_size
        transform_shape = (width,) if config.diagonal_contexts else (width, width)
        blocks: list[tuple[str, tuple[int, ...]]] = []
        if config.uses_source:
            blocks.append(("S", (config.source_vocab_size, width)))
            blocks.extend(
                (name, transform_shape)
                for name in window_block_names(config.source_window_width)
            )
        blocks.append(("Q", (config.vocab_size, width)))
        blocks.append(("R", (config.vocab_size, width)))
        blocks.extend(
            (name, transform_shape) for name in context_block_names(config.context_width)
        )
        blocks.append(("B", (config.vocab_size,)))
        if config.factored:
            classes = config.classes if num_classes is None else num_classes
            blocks.append(("F", (classes, width)))
            blocks.append(("FB", (classes,)))
        return cls(blocks)

    @property
    def size(self) -> int:
        return self._size

    @property
    def blocks(self) -> tuple[Block, ...]:
        return self._blocks

    def __iter__(self) -> Iterator[Block]:
        return iter(self._blocks)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __getitem__(self, name: str) -> Block:
        return self._by_name[name]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ParameterLayout):
            return NotImplemented
        return self._blocks == other._blocks

    def allocate(self) -> np.ndarray:
        return np.zeros(self._size, dtype=DTYPE)

    def check(self, data: np.ndarray) -> None:
        if sum(block.size for block in self._blocks) != self._size:
            raise ConfigurationError("Parameter block sizes do not sum to the layout size.")
        if data.ndim != 1 or data.shape[0] != self._size:
            raise ConfigurationError(
                f"Parameter buffer has shape {data.shape}, expected ({self._size},)."
            )

    def views(self, data: np.ndarray) -> dict[str, np.ndarray]:
        """Non-owning views of each block over ``data``."""
        self.check(data)
        return {
            block.name: data[block.offset : block.end].reshape(block.shape)
            for block in self._blocks
        }

    def relocate(self, old: ParameterLayout, old_data: np.ndarray) -> np.ndarray:
        """Copy every block whose shape is unchanged from ``old_data`` into a new
        buffer laid out by ``self``. Blocks that changed shape start at zero.
        """
        old.check(old_data)
        data = self.allocate()
        for block in self._blocks:
            if block.name in old and old[block.name].shape == block.shape:
                source = old[block.name]
                data[block.offset : block.end] = old_data[source.offset : source.end]
        return data
