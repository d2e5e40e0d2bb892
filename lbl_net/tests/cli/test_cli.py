import json
from collections.abc import Iterator
from pathlib import Path

import pytest
from click.testing import CliRunner
from loguru import logger

from lbl_net.cli import build_config, cli
from lbl_net.config import ModelType
from lbl_net.model.model import LanguageModel

MODEL_OPTIONS = [
    "--word-width",
    "4",
    "--order",
    "3",
    "--classes",
    "3",
    "--minibatch-size",
    "5",
    "--iterations",
    "2",
    "--log-level",
    "ERROR",
]


@pytest.fixture(autouse=True)
def reset_logging() -> Iterator[None]:
    yield
    logger.remove()


@pytest.fixture
def corpus_files(tmp_path: Path, toy_sentences: list[list[str]]) -> dict[str, Path]:
    training_file = tmp_path / "train.txt"
    training_file.write_text("\n".join(" ".join(s) for s in toy_sentences) + "\n")
    test_file = tmp_path / "test.txt"
    test_file.write_text("the cat sat on the mat\n")
    return {"training": training_file, "test": test_file}


def train_model(tmp_path: Path, corpus_files: dict[str, Path], *extra: str) -> Path:
    model_path = tmp_path / "model.zip"
    result = CliRunner().invoke(
        cli,
        [
            "train",
            "--training-file",
            str(corpus_files["training"]),
            "--test-file",
            str(corpus_files["test"]),
            "--model-output-file",
            str(model_path),
            "--quiet",
            *MODEL_OPTIONS,
            *extra,
        ],
    )
    assert result.exit_code == 0, result.output
    assert "Best test perplexity" in result.output
    return model_path


def test_build_config_merges_file_and_options(tmp_path: Path):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"model_type": "maxent", "classes": 7, "threads": 2}))

    config = build_config(config_path, {"classes": 9, "threads": None})

    assert config.model_type == ModelType.MAXENT
    assert config.classes == 9
    assert config.threads == 2


def test_train_evaluate_and_predict(tmp_path: Path, corpus_files: dict[str, Path]):
    model_path = train_model(tmp_path, corpus_files)
    runner = CliRunner()

    evaluated = runner.invoke(
        cli,
        [
            "evaluate",
            "-m",
            str(model_path),
            "--test-file",
            str(corpus_files["test"]),
            "--log-level",
            "ERROR",
        ],
    )
    assert evaluated.exit_code == 0, evaluated.output
    assert evaluated.output.startswith("Test perplexity: ")

    contexts = tmp_path / "contexts.txt"
    contexts.write_text("the cat\n")
    predicted = runner.invoke(
        cli,
        ["predict", "-m", str(model_path), "--contexts", str(contexts), "--log-level", "ERROR"],
    )
    assert predicted.exit_code == 0, predicted.output
    rows = [line.split("\t") for line in predicted.output.splitlines()]
    model = LanguageModel.load(model_path)
    assert len(rows) == len(model.dictionary)
    assert {row[0] for row in rows} == {"the cat"}
    assert sum(float(row[2]) for row in rows) == pytest.approx(1.0, abs=1e-4)


def test_resume_training(tmp_path: Path, corpus_files: dict[str, Path]):
    model_path = train_model(tmp_path, corpus_files)
    resumed_path = tmp_path / "resumed.zip"

    result = CliRunner().invoke(
        cli,
        [
            "train",
            "-m",
            str(model_path),
            "--training-file",
            str(corpus_files["training"]),
            "--model-output-file",
            str(resumed_path),
            "--quiet",
            "--log-level",
            "ERROR",
        ],
    )

    assert result.exit_code == 0, result.output
    assert resumed_path.exists()


def test_train_maxent(tmp_path: Path, corpus_files: dict[str, Path]):
    model_path = train_model(
        tmp_path, corpus_files, "--model-type", "maxent", "--sparse-features"
    )
    assert LanguageModel.load(model_path).config.sparse_features


def test_invalid_configuration(corpus_files: dict[str, Path]):
    result = CliRunner().invoke(
        cli,
        ["train", "--training-file", str(corpus_files["training"]), "--threads", "0"],
    )
    assert result.exit_code == 1
    assert "threads must be >= 1" in result.output


def test_unknown_test_word(tmp_path: Path, corpus_files: dict[str, Path]):
    model_path = train_model(tmp_path, corpus_files)
    unknown = tmp_path / "unknown.txt"
    unknown.write_text("the bird\n")

    result = CliRunner().invoke(
        cli, ["evaluate", "-m", str(model_path), "--test-file", str(unknown)]
    )

    assert result.exit_code == 1
    assert "bird" in result.output


def test_missing_model(tmp_path: Path):
    result = CliRunner().invoke(
        cli,
        [
            "evaluate",
            "-m",
            str(tmp_path / "missing.zip"),
            "--test-file",
            str(tmp_path / "test.txt"),
        ],
    )
    assert result.exit_code == 1
    assert "Model file not found" in result.output


def test_evaluate_expands_source_vocabulary(tmp_path: Path, corpus_files: dict[str, Path]):
    """Unseen test source words are rejected unless the vocabulary is expanded."""
    source_file = tmp_path / "train.src"
    source_file.write_text("le chat\nle chien\nun chat\nun chien\n")
    test_source_file = tmp_path / "test.src"
    test_source_file.write_text("le chat\n")
    model_path = train_model(
        tmp_path,
        corpus_files,
        "--model-type",
        "conditional",
        "--source-file",
        str(source_file),
        "--test-source-file",
        str(test_source_file),
    )
    test_source_file.write_text("le oiseau\n")
    arguments = [
        "evaluate",
        "-m",
        str(model_path),
        "--test-file",
        str(corpus_files["test"]),
        "--test-source-file",
        str(test_source_file),
        "--log-level",
        "ERROR",
    ]

    rejected = CliRunner().invoke(cli, arguments)
    expanded = CliRunner().invoke(cli, [*arguments, "--expand-source-vocabulary"])

    assert rejected.exit_code == 1
    assert "oiseau" in rejected.output
    assert expanded.exit_code == 0, expanded.output
    assert expanded.output.startswith("Test perplexity: ")


def test_expand_source_vocabulary_needs_source_file(tmp_path: Path, corpus_files: dict[str, Path]):
    model_path = train_model(tmp_path, corpus_files)
    result = CliRunner().invoke(
        cli,
        [
            "evaluate",
            "-m",
            str(model_path),
            "--test-file",
            str(corpus_files["test"]),
            "--expand-source-vocabulary",
        ],
    )
    assert result.exit_code == 1
    assert "test source file" in result.output


def test_log_file(tmp_path: Path, corpus_files: dict[str, Path]):
    model_path = train_model(tmp_path, corpus_files)
    log_file = tmp_path / "evaluate.log"

    result = CliRunner().invoke(
        cli,
        [
            "evaluate",
            "-m",
            str(model_path),
            "--test-file",
            str(corpus_files["test"]),
            "--log-level",
            "DEBUG",
            "--log-file",
            str(log_file),
        ],
    )
    logger.remove()

    assert result.exit_code == 0, result.output
    assert "compute_perplexity returned" in log_file.read_text()
