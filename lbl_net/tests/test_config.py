import pytest
from pydantic import ValidationError

from lbl_net.config import ModelConfig, ModelType, SoftmaxStrategy


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"threads": 0}, "threads must be >= 1"),
        ({"minibatch_size": 0}, "minibatch_size must be >= 1"),
        ({"ngram_order": 0}, "ngram_order must be >= 1"),
        ({"evaluate_every": 0}, "evaluate_every must be >= 1"),
        ({"evaluate_every": -5}, "evaluate_every must be >= 1"),
        ({"hash_space": -1}, "hash_space must be >= 0"),
        ({"model_type": ModelType.BASE, "noise_samples": 2}, "class-factored"),
        ({"source_window_width": 1}, "conditional"),
    ],
)
def test_rejects_invalid_settings(overrides, message):
    with pytest.raises(ValidationError, match=message):
        ModelConfig(**overrides)


def test_evaluate_every_defaults_to_schedule():
    assert ModelConfig().evaluate_every is None
    assert ModelConfig(evaluate_every=1).evaluate_every == 1


def test_derived_settings():
    config = ModelConfig(model_type=ModelType.MAXENT, ngram_order=4, hash_space=16)
    assert config.context_width == 3
    assert config.uses_collisions
    assert config.softmax_strategy == SoftmaxStrategy.FULL
    assert ModelConfig(noise_samples=3).softmax_strategy == SoftmaxStrategy.NCE
