from collections.abc import Hashable


class NormalizerCache:
    """Log-partition values keyed by context.

    Entries are published with ``dict.setdefault`` so concurrent scorers either
    see a complete value or compute it themselves; the first writer wins.
    The cache must be cleared whenever the parameters it was computed from
    change.
    """

    def __init__(self) -> None:
        self._values: dict[Hashable, float] = {}

    def get(self, key: Hashable) -> float | None:
        return self._values.get(key)

    def insert_if_absent(self, key: Hashable, value: float) -> float:
        return self._values.setdefault(key, value)

    def clear(self) -> None:
        self._values.clear()

    def __len__(self) -> int:
        return len(self._values)

    def __contains__(self, key: object) -> bool:
        return key in self._values
