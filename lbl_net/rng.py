import jax
import numpy as np

from lbl_net.constants import INIT_STD


def gaussian(key: jax.Array, shape: tuple[int, ...], std: float = INIT_STD) -> np.ndarray:
    return np.asarray(jax.random.normal(key, shape), dtype=np.float64) * std


def numpy_generator(key: jax.Array) -> np.random.Generator:
    """A numpy generator seeded from ``key``, for sampling inside worker threads."""
    return np.random.default_rng(
        int(jax.random.randint(key, (), 0, np.iinfo(np.int32).max))
    )
