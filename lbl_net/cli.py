import functools
from collections.abc import Callable
from pathlib import Path
from typing import Any, Final, ParamSpec, TypeVar, assert_never

import click
import jax
from loguru import logger
from pydantic import ValidationError

from lbl_net.config import ModelConfig, ModelType
from lbl_net.data.loader import load_training_data
from lbl_net.exceptions import ConfigurationError, UnknownWordError
from lbl_net.log import LogLevel, log_result, setup_logging
from lbl_net.model.model import LanguageModel
from lbl_net.train.trainer.trainer import TrainingFailed, TrainingSuccessful

P = ParamSpec("P")
R = TypeVar("R")

DEFAULT_LOG_LEVEL: Final[LogLevel] = LogLevel.INFO


def logging_options(f: Callable[P, R]) -> Callable[P, R]:
    @click.option(
        "--log-level",
        type=LogLevel,
        help="Log level",
        default=DEFAULT_LOG_LEVEL,
    )
    @click.option("--log-file", type=Path, help="Also write the log to this file", default=None)
    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        return f(*args, **kwargs)

    return wrapper


def model_options(f: Callable[P, R]) -> Callable[P, R]:
    @click.option(
        "-c",
        "--config",
        "config_path",
        type=Path,
        help="JSON file with model and training settings; options override it",
        default=None,
    )
    @click.option("--training-file", type=Path, help="Target-side training corpus", default=None)
    @click.option("--test-file", type=Path, help="Target-side test corpus", default=None)
    @click.option("--source-file", type=Path, help="Source-side training corpus", default=None)
    @click.option("--test-source-file", type=Path, help="Source-side test corpus", default=None)
    @click.option("--class-file", type=Path, help="Word classes, one 'class word count' per line", default=None)
    @click.option("--model-output-file", type=Path, help="Where to save the model", default=None)
    @click.option(
        "--model-type",
        type=click.Choice([v.value for v in ModelType], case_sensitive=False),
        help="Model variant",
        default=None,
    )
    @click.option("--word-width", "word_representation_size", type=int, help="Word representation size", default=None)
    @click.option("--order", "ngram_order", type=int, help="Model order (context width + 1)", default=None)
    @click.option("--classes", type=int, help="Number of word classes", default=None)
    @click.option("--diagonal-contexts/--full-contexts", default=None, help="Diagonal or full context matrices")
    @click.option("--sigmoid/--no-sigmoid", default=None, help="Apply a sigmoid to the prediction vector")
    @click.option("--step-size", type=float, help="AdaGrad step size", default=None)
    @click.option("--l2-lbl", type=float, help="L2 regularisation strength for the LBL weights", default=None)
    @click.option("--l2-maxent", type=float, help="L2 regularisation strength for the feature weights", default=None)
    @click.option("--noise-samples", type=int, help="Noise samples for NCE (0 for the full softmax)", default=None)
    @click.option("--minibatch-size", type=int, help="Minibatch size", default=None)
    @click.option("--iterations", type=int, help="Training iterations", default=None)
    @click.option("--threads", type=int, help="Worker threads", default=None)
    @click.option("--randomise/--no-randomise", default=None, help="Shuffle the corpus every iteration")
    @click.option("--feature-context-size", type=int, help="Longest n-gram feature context", default=None)
    @click.option("--sparse-features/--no-sparse-features", default=None, help="Restrict features to observed outputs")
    @click.option("--hash-space", type=int, help="Collision store size (0 disables hashing)", default=None)
    @click.option("--source-window-width", type=int, help="Source window half-width (-1 for the whole sentence)", default=None)
    @click.option("--evaluate-every", type=int, help="Evaluate every N minibatches", default=None)
    @click.option("--seed", type=int, help="Random seed", default=None)
    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        return f(*args, **kwargs)

    return wrapper


def build_config(config_path: Path | None, overrides: dict[str, Any]) -> ModelConfig:
    base = (
        ModelConfig()
        if config_path is None
        else ModelConfig.model_validate_json(config_path.read_text())
    )
    return ModelConfig.model_validate(
        base.model_dump() | {k: v for k, v in overrides.items() if v is not None}
    )


@click.group()
def cli():
    """Log-bilinear language model CLI"""


@cli.command("train", help="Train a log-bilinear language model")
@model_options
@logging_options
@click.option(
    "-m",
    "--model-path",
    type=Path,
    help="Continue training a saved model",
    default=None,
)
@click.option("--quiet", is_flag=True, help="Hide the progress bar", default=False)
def train(
    *,
    config_path: Path | None,
    log_level: LogLevel,
    log_file: Path | None,
    model_path: Path | None,
    quiet: bool,
    **overrides: Any,
):
    setup_logging(log_level, log_file=log_file)
    try:
        config = build_config(config_path, overrides)
        key = jax.random.PRNGKey(config.seed)
        create_key, train_key = jax.random.split(key)
        if model_path is not None:
            model = LanguageModel.load(model_path)
            if config.training_file is None:
                raise ConfigurationError("A training file is required.")
            training_corpus = model.read_corpus(config.training_file, config.source_file)
            test_corpus = (
                None
                if config.test_file is None
                else model.read_corpus(config.test_file, config.test_source_file)
            )
        else:
            data = load_training_data(config)
            model = LanguageModel.create(data, key=create_key)
            training_corpus, test_corpus = data.training_corpus, data.test_corpus
    except (ValidationError, ConfigurationError, UnknownWordError) as e:
        raise click.ClickException(str(e)) from e

    result = model.train(
        training_corpus,
        test_corpus,
        key=train_key,
        model_output_file=config.model_output_file,
        quiet=quiet,
    )
    match result:
        case TrainingSuccessful():
            logger.info(
                f"Training completed after {result.steps} minibatches."
                + (
                    ""
                    if result.model_checkpoint_path is None
                    else f" Model saved to: {result.model_checkpoint_path}"
                )
            )
            if test_corpus is not None:
                click.echo(f"Best test perplexity: {result.best_perplexity:.4f}")
        case TrainingFailed():
            logger.error(f"Training failed: {result.message}")
            raise SystemExit(1)
        case never:
            assert_never(never)


def load_model(model_path: Path) -> LanguageModel:
    if not model_path.exists():
        raise click.ClickException(f"Model file not found: {model_path}")
    try:
        return LanguageModel.load(model_path)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


@log_result(LogLevel.DEBUG)
def compute_perplexity(model: LanguageModel, test_file: Path, test_source_file: Path | None) -> float:
    return model.evaluate(model.read_corpus(test_file, test_source_file))


@cli.command("evaluate", help="Report the perplexity of a test corpus")
@click.option("-m", "--model-path", type=Path, required=True, help="Saved model")
@click.option("--test-file", type=Path, required=True, help="Target-side test corpus")
@click.option("--test-source-file", type=Path, default=None, help="Source-side test corpus")
@click.option(
    "--expand-source-vocabulary",
    is_flag=True,
    default=False,
    help="Add unseen source words of the test source corpus to the model",
)
@logging_options
def evaluate(
    *,
    model_path: Path,
    test_file: Path,
    test_source_file: Path | None,
    expand_source_vocabulary: bool,
    log_level: LogLevel,
    log_file: Path | None,
):
    setup_logging(log_level, log_file=log_file)
    model = load_model(model_path)
    try:
        if expand_source_vocabulary:
            if test_source_file is None:
                raise ConfigurationError("Expanding the source vocabulary needs a test source file.")
            with open(test_source_file) as f:
                words = [word for line in f for word in line.split()]
            added = model.expand_source_vocabulary(
                words, key=jax.random.PRNGKey(model.config.seed)
            )
            logger.info(f"Added {added} source words.")
        perplexity = compute_perplexity(model, test_file, test_source_file)
    except (ConfigurationError, UnknownWordError) as e:
        raise click.ClickException(str(e)) from e
    click.echo(f"Test perplexity: {perplexity:.4f}")


@cli.command("predict", help="Print the next-word distribution for each context")
@click.option("-m", "--model-path", type=Path, required=True, help="Saved model")
@click.option(
    "--contexts",
    "contexts_path",
    type=Path,
    required=True,
    help="One context per line, oldest word first",
)
@logging_options
def predict(
    *, model_path: Path, contexts_path: Path, log_level: LogLevel, log_file: Path | None
):
    setup_logging(log_level, log_file=log_file)
    model = load_model(model_path)
    if model.config.uses_source:
        raise click.ClickException("Prediction without a source sentence needs a monolingual model.")
    with open(contexts_path) as f:
        for line in f:
            tokens = line.split()
            try:
                probabilities = model.predict_distribution(tokens[::-1])
            except UnknownWordError as e:
                raise click.ClickException(str(e)) from e
            for word_id, probability in enumerate(probabilities):
                click.echo(f"{' '.join(tokens)}\t{model.dictionary[word_id]}\t{probability:.6g}")


if __name__ == "__main__":
    cli()
