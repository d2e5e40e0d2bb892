import jax
import jax.random as random
import numpy as np


class IndexBatcher:
    """Yields one epoch of corpus positions at a time, split into minibatches.

    Minibatches are consecutive slices of ``batch_size`` positions (the last
    may be shorter) of a fresh permutation per epoch, or of the corpus order
    when ``randomise`` is off.
    """

    def __init__(
        self,
        *,
        train_set_size: int,
        batch_size: int,
        key: jax.Array,
        randomise: bool = True,
    ):
        self.batch_size = batch_size
        self.train_set_size = train_set_size
        self._key = key
        self._randomise = randomise

    def _order(self) -> np.ndarray:
        if not self._randomise:
            return np.arange(self.train_set_size, dtype=np.int64)
        self._key, subkey = random.split(self._key)
        return np.asarray(random.permutation(subkey, self.train_set_size), dtype=np.int64)

    def epoch(self) -> list[np.ndarray]:
        order = self._order()
        return [
            order[start : start + self.batch_size]
            for start in range(0, self.train_set_size, self.batch_size)
        ]

    @property
    def batches_per_epoch(self) -> int:
        return (self.train_set_size + self.batch_size - 1) // self.batch_size
