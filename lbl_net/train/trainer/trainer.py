import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Final, TypeAlias

import jax
import numpy as np
from loguru import logger
from more_itertools import chunked
from tqdm import tqdm

from lbl_net.config import ModelConfig
from lbl_net.data.corpus import Corpus
from lbl_net.exceptions import AbortTraining, ConfigurationError
from lbl_net.functions import perplexity
from lbl_net.model.weights import Weights
from lbl_net.optimizer.adagrad import AdaGrad
from lbl_net.regulariser.l2 import L2Regulariser
from lbl_net.train.batcher import IndexBatcher
from lbl_net.train.trainer.parallel import ParallelGradient, WorkerPool

DEFAULT_LOG_INTERVAL_SECONDS: Final[int] = 10
EVALUATION_BATCH_SIZE: Final[int] = 10000


@dataclass(frozen=True, kw_only=True)
class TrainingSuccessful:
    model_checkpoint_path: Path | None
    best_perplexity: float
    steps: int


@dataclass(frozen=True, kw_only=True)
class TrainingFailed:
    message: str
    model_checkpoint_path: Path | None
    training_progress: float | None = None


TrainingResult: TypeAlias = TrainingSuccessful | TrainingFailed

SaveHandler: TypeAlias = Callable[[], None]


def should_evaluate(step: int, evaluate_every: int | None) -> bool:
    """Evaluate often early on, then every thousand minibatches."""
    if evaluate_every is not None:
        return step % evaluate_every == 0
    return (step % 100 == 0 and step <= 1000) or step % 1000 == 0


def evaluate_perplexity(
    weights: Weights, corpus: Corpus, batch_size: int = EVALUATION_BATCH_SIZE
) -> float:
    if len(corpus) == 0:
        return math.inf
    log_likelihood = 0.0
    for chunk in chunked(range(len(corpus)), batch_size):
        examples = weights.examples(corpus, chunk)
        log_likelihood += float(np.sum(weights.log_likelihoods(examples)))
    return perplexity(log_likelihood, len(corpus))


class Trainer:
    """Minibatch AdaGrad training on a fixed pool of worker threads.

    Every minibatch runs four barrier-separated phases: the designated worker
    resets the shared gradient; all workers accumulate their share; the
    designated worker applies AdaGrad; the designated worker applies L2 and
    records the objective.
    """

    def __init__(
        self,
        *,
        config: ModelConfig,
        weights: Weights,
        training_corpus: Corpus,
        test_corpus: Corpus | None = None,
        key: jax.Array,
        model_checkpoint_path: Path | None = None,
        save: SaveHandler | None = None,
        quiet: bool = False,
    ):
        if len(training_corpus) == 0:
            raise ConfigurationError("Cannot train on an empty corpus.")
        batcher_key, gradient_key = jax.random.split(key)
        self._config = config
        self._weights = weights
        self._training_corpus = training_corpus
        self._test_corpus = test_corpus
        self._model_checkpoint_path = model_checkpoint_path
        self._save = save
        self._quiet = quiet
        self._logger = logger.bind(name="trainer")
        self._batcher = IndexBatcher(
            train_set_size=len(training_corpus),
            batch_size=config.minibatch_size,
            key=batcher_key,
            randomise=config.randomise,
        )
        self._gradient_key = gradient_key
        self._optimizer = AdaGrad(weights=weights, step_size=config.step_size)
        self._regulariser = L2Regulariser(weights=weights, corpus_size=len(training_corpus))

        self._step = 0
        self._iteration = 0
        self._iteration_objective = 0.0
        self._best_perplexity = math.inf
        self._minibatches: list[np.ndarray] = []
        self._last_log_time = time.time()

    @property
    def best_perplexity(self) -> float:
        return self._best_perplexity

    @property
    def step(self) -> int:
        return self._step

    def train(self) -> TrainingResult:
        self._logger.info(
            f"Training {type(self._weights).__name__} with {self._weights.num_parameters()}"
            f" parameters for {self._config.iterations} iterations on"
            f" {len(self._training_corpus)} tokens using {self._config.threads} threads."
        )
        self._logger.info(self._optimizer.report())
        pool = WorkerPool(self._config.threads)
        parallel = ParallelGradient(
            self._weights, self._training_corpus, pool, key=self._gradient_key
        )
        try:
            pool.run(lambda thread_id: self._worker(thread_id, pool, parallel))
        except KeyboardInterrupt:
            self._logger.info("Training interrupted by user.")
            return TrainingFailed(
                message="Training interrupted by user.",
                model_checkpoint_path=self._model_checkpoint_path,
                training_progress=self._progress(),
            )
        except Exception as e:
            raise AbortTraining(
                f"{type(e).__name__}: {e}.",
                training_progress=self._progress(),
                model_checkpoint_path=self._model_checkpoint_path,
            ) from e
        return TrainingSuccessful(
            model_checkpoint_path=self._model_checkpoint_path,
            best_perplexity=self._best_perplexity,
            steps=self._step,
        )

    def _progress(self) -> float:
        total = self._config.iterations * self._batcher.batches_per_epoch
        return self._step / total if total else 1.0

    def _worker(self, thread_id: int, pool: WorkerPool, parallel: ParallelGradient) -> None:
        designated = thread_id == 0
        for _ in range(self._config.iterations):
            if designated:
                self._start_iteration()
            pool.wait()
            for minibatch in self._minibatches:
                if designated:
                    parallel.reset(minibatch)
                pool.wait()

                parallel.accumulate(thread_id, minibatch)
                pool.wait()

                if designated:
                    self._optimizer.update(parallel.gradient)
                pool.wait()

                if designated:
                    self._iteration_objective += parallel.objective
                    self._iteration_objective += self._regulariser.update(
                        parallel.gradient, minibatch_size=len(minibatch)
                    )
                    self._end_minibatch()
                pool.wait()
            if designated:
                self._end_iteration()

    def _start_iteration(self) -> None:
        self._iteration += 1
        self._iteration_objective = 0.0
        self._minibatches = self._batcher.epoch()
        self._progress_bar = tqdm(
            total=len(self._minibatches),
            desc=f"Iteration {self._iteration}",
            unit=" minibatch",
            disable=self._quiet,
        )

    def _end_minibatch(self) -> None:
        self._step += 1
        self._progress_bar.update(1)
        if time.time() - self._last_log_time > DEFAULT_LOG_INTERVAL_SECONDS:
            self._last_log_time = time.time()
            self._logger.debug(
                f"Step {self._step}: running objective {self._iteration_objective:.4f}."
            )
        if self._test_corpus is not None and should_evaluate(
            self._step, self._config.evaluate_every
        ):
            self._evaluate()

    def _end_iteration(self) -> None:
        self._progress_bar.close()
        self._logger.info(
            f"Iteration {self._iteration}: training objective"
            f" {self._iteration_objective / len(self._training_corpus):.6f}."
        )
        if self._test_corpus is not None:
            self._evaluate()
        elif self._save is not None:
            self._save()

    def _evaluate(self) -> None:
        test_perplexity = evaluate_perplexity(self._weights, self._test_corpus)  # type: ignore[arg-type]
        self._logger.info(f"Step {self._step}: test perplexity {test_perplexity:.4f}.")
        if test_perplexity < self._best_perplexity:
            self._best_perplexity = test_perplexity
            if self._save is not None:
                self._save()
