import threading
from collections.abc import Callable, Sequence

import jax
import numpy as np
from loguru import logger

from lbl_net.data.corpus import Corpus
from lbl_net.log import log_time
from lbl_net.model.weights import Weights
from lbl_net.rng import numpy_generator


class WorkerPool:
    """A fixed set of threads running the same body in lock-step.

    The calling thread acts as worker 0, the designated worker for serial
    steps. Workers synchronise through :meth:`wait`; an exception in any
    worker aborts the barrier so that the others stop with
    ``BrokenBarrierError`` instead of waiting forever.
    """

    def __init__(self, threads: int):
        if threads < 1:
            raise ValueError(f"threads must be >= 1, got {threads}")
        self.threads = threads
        self.lock = threading.Lock()
        self._barrier = threading.Barrier(threads)
        self._logger = logger.bind(name="pool")

    def wait(self) -> None:
        self._barrier.wait()

    def _guard(
        self, body: Callable[[int], None], thread_id: int, errors: list[BaseException]
    ) -> None:
        try:
            body(thread_id)
        except BaseException as e:
            if not isinstance(e, threading.BrokenBarrierError):
                self._logger.opt(exception=e).error(f"Worker {thread_id} failed.")
            errors.append(e)
            self._barrier.abort()

    def run(self, body: Callable[[int], None]) -> None:
        """Run ``body(thread_id)`` on every worker and re-raise the first failure."""
        errors: list[BaseException] = []
        workers = [
            threading.Thread(
                target=self._guard,
                args=(body, thread_id, errors),
                name=f"lbl-worker-{thread_id}",
                daemon=True,
            )
            for thread_id in range(1, self.threads)
        ]
        for worker in workers:
            worker.start()
        self._guard(body, 0, errors)
        for worker in workers:
            worker.join()
        self._barrier.reset()
        if errors:
            raise next(
                (e for e in errors if not isinstance(e, threading.BrokenBarrierError)),
                errors[0],
            )


class ParallelGradient:
    """Sums per-thread minibatch gradients into one shared gradient.

    Each worker computes the gradient of its round-robin share of the
    minibatch into a thread-local buffer and merges the touched rows into
    :attr:`gradient` under the pool lock.
    """

    def __init__(
        self,
        weights: Weights,
        corpus: Corpus,
        pool: WorkerPool,
        *,
        key: jax.Array,
    ):
        self._weights = weights
        self._corpus = corpus
        self._pool = pool
        self.gradient = weights.zeros_like()
        self.objective = 0.0
        self._local = [weights.zeros_like() for _ in range(pool.threads)]
        self._rngs = [
            numpy_generator(subkey) for subkey in jax.random.split(key, pool.threads)
        ]

    def reset(self, minibatch: np.ndarray) -> None:
        """Designated worker only: clear the shared gradient for ``minibatch``."""
        self.gradient.reset_gradient(minibatch)
        self.objective = 0.0

    def accumulate(self, thread_id: int, minibatch: np.ndarray) -> None:
        positions = minibatch[thread_id :: self._pool.threads]
        local = self._local[thread_id]
        local.reset_gradient(positions)
        with log_time(
            f"Worker {thread_id} gradient over {len(positions)} positions: {{time_taken:.4f}}s"
        ):
            objective, words = self._weights.accumulate_gradient(
                self._corpus, positions, local, self._rngs[thread_id]
            )
        with self._pool.lock:
            self.gradient.sync_update(local, words)
            self.objective += objective


def minibatch_gradient(
    weights: Weights,
    corpus: Corpus,
    minibatch: Sequence[int] | np.ndarray,
    *,
    threads: int,
    key: jax.Array,
) -> tuple[Weights, float]:
    """The summed gradient and objective of ``minibatch`` computed on ``threads`` workers."""
    pool = WorkerPool(threads)
    parallel = ParallelGradient(weights, corpus, pool, key=key)
    positions = np.asarray(minibatch, dtype=np.int64)

    def body(thread_id: int) -> None:
        if thread_id == 0:
            parallel.reset(positions)
        pool.wait()
        parallel.accumulate(thread_id, positions)
        pool.wait()

    pool.run(body)
    return parallel.gradient, parallel.objective
