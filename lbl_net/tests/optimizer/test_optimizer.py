from collections.abc import Callable
from typing import TypeAlias

import numpy as np
import pytest

from lbl_net.config import ModelType
from lbl_net.data.corpus import Corpus
from lbl_net.model.weights import Weights
from lbl_net.optimizer import AdaGrad
from lbl_net.regulariser import L2Regulariser

WeightsBuilder: TypeAlias = Callable[..., tuple[Weights, Corpus]]


@pytest.mark.parametrize("model_type", [ModelType.BASE, ModelType.FACTORED, ModelType.MAXENT])
def test_first_adagrad_step_moves_by_step_size(
    weights_builder: WeightsBuilder, model_type: ModelType
):
    """
    With an empty accumulator the first step is -step_size * sign(gradient).
    """
    weights, corpus = weights_builder(model_type, step_size=0.1)
    initial = weights.data.copy()
    gradient, _, _ = weights.get_gradient(corpus, np.arange(len(corpus)))
    optimizer = AdaGrad(weights=weights, step_size=0.1)

    optimizer.update(gradient)

    assert np.allclose(weights.data, initial - 0.1 * np.sign(gradient.data))
    assert np.allclose(optimizer.accumulator.data, gradient.data**2)
    assert optimizer.iterations == 1


def test_adagrad_steps_shrink(weights_builder: WeightsBuilder):
    weights, corpus = weights_builder(step_size=0.1)
    gradient, _, _ = weights.get_gradient(corpus, np.arange(len(corpus)))
    optimizer = AdaGrad(weights=weights, step_size=0.1)

    optimizer.update(gradient)
    after_first = weights.data.copy()
    optimizer.update(gradient)

    moved = gradient.data != 0
    second_step = np.abs(weights.data - after_first)[moved]
    assert np.allclose(second_step, 0.1 / np.sqrt(2))


def test_adagrad_leaves_untouched_entries(weights_builder: WeightsBuilder):
    weights, _ = weights_builder()
    gradient = weights.zeros_like()
    gradient.data[0] = 2.0
    initial = weights.data.copy()

    AdaGrad(weights=weights, step_size=0.5).update(gradient)

    assert weights.data[0] == pytest.approx(initial[0] - 0.5)
    assert np.array_equal(weights.data[1:], initial[1:])


class TestL2Regulariser:
    def test_minibatch_factor(self, weights_builder: WeightsBuilder):
        weights, _ = weights_builder()
        assert L2Regulariser(weights=weights, corpus_size=8).minibatch_factor(2) == 0.25
        assert L2Regulariser(weights=weights, corpus_size=0).minibatch_factor(2) == 0.0

    def test_shrinks_weights(self, weights_builder: WeightsBuilder):
        weights, corpus = weights_builder(step_size=0.1, l2_lbl=0.5)
        initial = weights.data.copy()
        regulariser = L2Regulariser(weights=weights, corpus_size=len(corpus))

        objective = regulariser.update(minibatch_size=len(corpus))

        expected = initial * (1 - 0.1 * 0.5)
        assert np.allclose(weights.data, expected)
        assert objective == pytest.approx(0.5 * 0.5 * np.sum(expected**2))

    def test_scales_with_minibatch_share(self, weights_builder: WeightsBuilder):
        weights, corpus = weights_builder(step_size=0.2, l2_lbl=1.0)
        initial = weights.data.copy()

        L2Regulariser(weights=weights, corpus_size=2 * len(corpus)).update(
            minibatch_size=len(corpus)
        )

        assert np.allclose(weights.data, initial * (1 - 0.5 * 0.2 * 1.0))

    def test_clears_normaliser_cache(self, weights_builder: WeightsBuilder):
        weights, corpus = weights_builder(l2_lbl=1.0)
        example = weights.examples(corpus, [2])
        weights.log_probability(example)

        L2Regulariser(weights=weights, corpus_size=len(corpus)).update(
            minibatch_size=len(corpus)
        )

        assert weights.log_probability(example) == pytest.approx(
            weights.log_probability(example, cache=False)
        )

    def test_maxent_penalises_feature_weights(self, weights_builder: WeightsBuilder):
        weights, corpus = weights_builder(ModelType.MAXENT, l2_lbl=0.0, l2_maxent=1.0)
        positions = np.arange(len(corpus))
        gradient, _, _ = weights.get_gradient(corpus, positions)
        AdaGrad(weights=weights, step_size=0.1).update(gradient)

        objective = L2Regulariser(weights=weights, corpus_size=len(corpus)).update(
            weights.zeros_like(positions), minibatch_size=len(corpus)
        )

        assert objective > 0.0
