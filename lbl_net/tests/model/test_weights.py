import copy
import pickle
from dataclasses import dataclass, field
from typing import Any

import jax
import numpy as np
import pytest

from lbl_net.config import ModelType
from lbl_net.exceptions import ConfigurationError, NumericalError
from lbl_net.model.conditional import ConditionalWeights
from lbl_net.model.factored import FactoredWeights
from lbl_net.model.maxent import FactoredMaxentWeights
from lbl_net.model.weights import MinibatchWords, Weights
from lbl_net.optimizer import AdaGrad

EPS = 1e-4


@dataclass(frozen=True)
class VariantCase:
    name: str
    model_type: ModelType
    overrides: dict[str, Any] = field(default_factory=dict)


VARIANTS = [
    VariantCase(name="base_diagonal", model_type=ModelType.BASE),
    VariantCase(
        name="base_full", model_type=ModelType.BASE, overrides={"diagonal_contexts": False}
    ),
    VariantCase(name="base_sigmoid", model_type=ModelType.BASE, overrides={"sigmoid": True}),
    VariantCase(name="factored_diagonal", model_type=ModelType.FACTORED),
    VariantCase(
        name="factored_full",
        model_type=ModelType.FACTORED,
        overrides={"diagonal_contexts": False},
    ),
    VariantCase(
        name="factored_sigmoid", model_type=ModelType.FACTORED, overrides={"sigmoid": True}
    ),
    VariantCase(
        name="factored_nce", model_type=ModelType.FACTORED, overrides={"noise_samples": 3}
    ),
    VariantCase(name="conditional_sum", model_type=ModelType.CONDITIONAL),
    VariantCase(
        name="conditional_window",
        model_type=ModelType.CONDITIONAL,
        overrides={"source_window_width": 1},
    ),
    VariantCase(
        name="conditional_window_full",
        model_type=ModelType.CONDITIONAL,
        overrides={"source_window_width": 1, "diagonal_contexts": False},
    ),
    VariantCase(name="maxent_unconstrained", model_type=ModelType.MAXENT),
    VariantCase(
        name="maxent_sparse", model_type=ModelType.MAXENT, overrides={"sparse_features": True}
    ),
    VariantCase(
        name="maxent_collision", model_type=ModelType.MAXENT, overrides={"hash_space": 50}
    ),
]


class TestParameterLayout:
    @pytest.mark.parametrize("case", VARIANTS, ids=lambda c: c.name)
    def test_block_sizes_sum_to_buffer_size(self, weights_builder, case: VariantCase):
        """The named blocks exactly tile the flat parameter buffer."""
        weights, _ = weights_builder(case.model_type, **case.overrides)
        assert sum(block.size for block in weights.layout) == weights.layout.size
        assert weights.data.shape == (weights.num_parameters(),)

    @pytest.mark.parametrize(
        "model_type, overrides, expected",
        [
            (ModelType.BASE, {}, ["Q", "R", "C0", "C1", "B"]),
            (ModelType.FACTORED, {}, ["Q", "R", "C0", "C1", "B", "F", "FB"]),
            (
                ModelType.CONDITIONAL,
                {"source_window_width": 1},
                ["S", "T0", "T1", "T2", "Q", "R", "C0", "C1", "B", "F", "FB"],
            ),
        ],
    )
    def test_block_order(self, weights_builder, model_type, overrides, expected):
        """Blocks are laid out source first, then context, output and class parameters."""
        weights, _ = weights_builder(model_type, **overrides)
        assert [block.name for block in weights.layout] == expected

    def test_blocks_are_views_of_the_buffer(self, weights_builder):
        """Every named block writes through to the flat buffer."""
        weights, _ = weights_builder(ModelType.FACTORED)
        assert isinstance(weights, FactoredWeights)
        for view in (weights.Q, weights.R, weights.B, weights.F, weights.FB, *weights.C):
            assert np.shares_memory(view, weights.data)
        weights.data[:] = 0.0
        assert not np.any(weights.R)

    def test_num_parameters(self, weights_builder):
        """The parameter count matches the block shapes."""
        weights, _ = weights_builder(ModelType.FACTORED)
        # Q, R: 5x3 each; C0, C1: 3 each; B: 5; F: 3x3; FB: 3
        assert weights.num_parameters() == 15 + 15 + 3 + 3 + 5 + 9 + 3

    def test_wrong_buffer_size_raises(self, weights_builder):
        """A buffer of the wrong size is rejected."""
        weights, _ = weights_builder(ModelType.BASE)
        with pytest.raises(ConfigurationError):
            Weights(weights.config, weights.metadata, data=np.zeros(3))

    def test_output_bias_is_smoothed_unigram(self, weights_builder):
        """The output bias starts at the add-one smoothed log unigram."""
        weights, corpus = weights_builder(ModelType.BASE)
        counts = corpus.unigram_counts(5)
        np.testing.assert_allclose(
            weights.B, np.log((counts + 1.0) / (counts.sum() + 5))
        )

    def test_class_bias_initialises_fb(self, weights_builder):
        """The class bias starts at the log class unigram."""
        weights, _ = weights_builder(ModelType.FACTORED)
        assert isinstance(weights, FactoredWeights)
        np.testing.assert_allclose(weights.FB, np.log([0.25, 0.5, 0.25]))


class TestCopying:
    @pytest.mark.parametrize("case", VARIANTS, ids=lambda c: c.name)
    def test_deepcopy_does_not_alias(self, weights_builder, case: VariantCase):
        """A deep copy owns its own buffer and rebinds its views to it."""
        weights, _ = weights_builder(case.model_type, **case.overrides)
        clone = copy.deepcopy(weights)
        assert clone == weights
        assert not np.shares_memory(clone.data, weights.data)
        clone.data += 1.0
        assert clone != weights
        assert np.shares_memory(clone.Q, clone.data)

    @pytest.mark.parametrize("case", VARIANTS, ids=lambda c: c.name)
    def test_pickle_round_trip(self, weights_builder, case: VariantCase):
        """Pickling preserves the weights and rebinds the views."""
        weights, _ = weights_builder(case.model_type, **case.overrides)
        restored = pickle.loads(pickle.dumps(weights))
        assert restored == weights
        assert np.shares_memory(restored.R, restored.data)


class TestGradient:
    @pytest.mark.parametrize("case", VARIANTS, ids=lambda c: c.name)
    def test_gradient_matches_finite_differences(self, weights_builder, case: VariantCase):
        """The analytic gradient agrees with central finite differences."""
        weights, corpus = weights_builder(case.model_type, **case.overrides)
        positions = np.arange(len(corpus))
        gradient, objective, _ = weights.get_gradient(
            corpus, positions, np.random.default_rng(7)
        )
        assert objective == pytest.approx(
            weights.get_objective(corpus, positions, np.random.default_rng(7))
        )
        assert weights.check_gradient(corpus, positions, gradient, EPS, seed=7)

    def test_check_gradient_detects_a_wrong_gradient(self, weights_builder):
        """A perturbed gradient fails the finite-difference check."""
        weights, corpus = weights_builder(ModelType.FACTORED)
        positions = np.arange(len(corpus))
        gradient, _, _ = weights.get_gradient(corpus, positions)
        gradient.data[0] += 1.0
        assert not weights.check_gradient(corpus, positions, gradient, EPS)

    def test_gradient_of_subset_touches_only_its_context_rows(self, weights_builder):
        """A single position touches only its context words and its class's output rows."""
        weights, corpus = weights_builder(ModelType.FACTORED)
        gradient, _, words = weights.get_gradient(corpus, [1])
        # position 1 has context [a, <s>]
        assert words.context_words == {0, 2}
        untouched = [w for w in range(5) if w not in words.context_words]
        assert not np.any(gradient.Q[untouched])
        # output rows of the class of "b" (ids 2 and 3)
        assert words.output_words == {2, 3}

    def test_empty_positions(self, weights_builder):
        """An empty minibatch has zero objective and gradient."""
        weights, corpus = weights_builder(ModelType.FACTORED)
        gradient, objective, words = weights.get_gradient(corpus, [])
        assert objective == 0.0
        assert not np.any(gradient.data)
        assert words.context_words == set()

    def test_nce_reuses_noise_for_equal_seeds(self, weights_builder):
        """Equal noise seeds give identical NCE objectives."""
        weights, corpus = weights_builder(ModelType.FACTORED, noise_samples=4)
        positions = np.arange(len(corpus))
        first = weights.get_objective(corpus, positions, np.random.default_rng(3))
        second = weights.get_objective(corpus, positions, np.random.default_rng(3))
        assert first == second


def reference_objective(weights: Weights, words, contexts, markers=None) -> float:
    objective = 0.0
    for word, context in zip(words, contexts, strict=True):
        pv = sum(weights.C[i] * weights.Q[w] for i, w in enumerate(context))
        if markers is None:
            scores = weights.R @ pv + weights.B
            objective -= scores[word] - np.log(np.sum(np.exp(scores)))
            continue
        assert isinstance(weights, FactoredWeights)
        class_id = int(np.searchsorted(markers, word, side="right")) - 1
        start, end = markers[class_id], markers[class_id + 1]
        class_scores = weights.F @ pv + weights.FB
        word_scores = weights.R[start:end] @ pv + weights.B[start:end]
        objective -= class_scores[class_id] - np.log(np.sum(np.exp(class_scores)))
        objective -= word_scores[word - start] - np.log(np.sum(np.exp(word_scores)))
    return float(objective)


class TestObjective:
    WORDS = [2, 3, 4, 1]
    CONTEXTS = [[0, 0], [2, 0], [3, 2], [4, 3]]

    def test_factored_objective_matches_reference(self, weights_builder):
        """The factored objective matches a direct numpy computation."""
        weights, corpus = weights_builder(ModelType.FACTORED, words=self.WORDS)
        expected = reference_objective(weights, self.WORDS, self.CONTEXTS, markers=[0, 2, 4, 5])
        assert weights.get_objective(corpus, range(4)) == pytest.approx(expected, rel=1e-10)

    def test_base_objective_matches_reference(self, weights_builder):
        """The base objective matches a direct numpy computation."""
        weights, corpus = weights_builder(ModelType.BASE, words=self.WORDS)
        expected = reference_objective(weights, self.WORDS, self.CONTEXTS)
        assert weights.get_objective(corpus, range(4)) == pytest.approx(expected, rel=1e-10)

    def test_same_key_gives_same_objective(self, weights_builder):
        """Equal initialisation keys give equal weights."""
        first, corpus = weights_builder(ModelType.FACTORED, seed=11)
        second, _ = weights_builder(ModelType.FACTORED, seed=11)
        assert first.get_objective(corpus, range(len(corpus))) == second.get_objective(
            corpus, range(len(corpus))
        )

    def test_non_finite_scores_raise(self, weights_builder):
        """Non-finite scores raise with the offending position."""
        weights, corpus = weights_builder(ModelType.FACTORED)
        weights.data[:] = np.nan
        with pytest.raises(NumericalError, match="position=0"):
            weights.get_objective(corpus, range(len(corpus)))

    def test_training_lowers_objective(self, weights_builder):
        """Full-batch AdaGrad on the four-token corpus lowers the objective at every step."""
        weights, corpus = weights_builder(
            ModelType.FACTORED, words=self.WORDS, step_size=0.02, l2_lbl=0.0
        )
        optimizer = AdaGrad(weights=weights, step_size=0.02)
        objectives = [weights.get_objective(corpus, range(4))]
        for _ in range(10):
            gradient, _, _ = weights.get_gradient(corpus, range(4))
            optimizer.update(gradient)
            objectives.append(weights.get_objective(corpus, range(4)))
        assert all(after < before for before, after in zip(objectives, objectives[1:]))


class TestNormalisation:
    @pytest.mark.parametrize("case", VARIANTS, ids=lambda c: c.name)
    def test_distribution_sums_to_one(self, weights_builder, case: VariantCase):
        """The predicted distribution over the vocabulary sums to one."""
        weights, corpus = weights_builder(case.model_type, **case.overrides)
        for position in range(len(corpus)):
            distribution = weights.predict_distribution(weights.examples(corpus, [position]))
            assert distribution.shape == (5,)
            assert np.sum(distribution) == pytest.approx(1.0)

    @pytest.mark.parametrize("case", VARIANTS, ids=lambda c: c.name)
    def test_log_probability_agrees_with_batch_likelihoods(
        self, weights_builder, case: VariantCase
    ):
        """Single-example scoring matches batch scoring."""
        weights, corpus = weights_builder(case.model_type, **case.overrides)
        batch = weights.log_likelihoods(weights.examples(corpus, range(len(corpus))))
        for position in range(len(corpus)):
            single = weights.log_probability(weights.examples(corpus, [position]))
            assert single == pytest.approx(batch[position])

    def test_class_probabilities_sum_to_one(self, weights_builder):
        """Class probabilities sum to one for every context."""
        weights, corpus = weights_builder(ModelType.FACTORED)
        assert isinstance(weights, FactoredWeights)
        examples = weights.examples(corpus, range(len(corpus)))
        pv = weights.prediction_vectors(examples)
        scores = weights._class_scores(examples, pv)
        probabilities = np.exp(scores) / np.exp(scores).sum(axis=1, keepdims=True)
        np.testing.assert_allclose(probabilities.sum(axis=1), 1.0)

    def test_single_example_pads_short_context(self, weights_builder):
        """Short contexts are padded with the sentence start marker."""
        weights, corpus = weights_builder(ModelType.FACTORED)
        padded = weights.single_example(2, [])
        assert padded.context_of(0) == (0, 0)
        from_corpus = weights.examples(corpus, [0])
        assert weights.log_probability(padded) == pytest.approx(
            weights.log_probability(from_corpus)
        )


class TestCache:
    def test_cached_and_uncached_agree_when_interleaved(self, weights_builder):
        """Cached and uncached scores agree across interleaved contexts."""
        weights, corpus = weights_builder(ModelType.FACTORED)
        assert isinstance(weights, FactoredWeights)
        for position in [0, 3, 1, 0, 6, 3, 2]:
            examples = weights.examples(corpus, [position])
            cached = weights.log_probability(examples)
            uncached = weights.log_probability(examples, cache=False)
            assert cached == pytest.approx(uncached)
        class_entries, word_entries = weights.cache_sizes()
        assert class_entries > 0 and word_entries > 0

    @pytest.mark.parametrize("model_type", [ModelType.FACTORED, ModelType.MAXENT])
    def test_cache_hit_skips_score_vectors(self, weights_builder, model_type, monkeypatch):
        """A cached normaliser leaves only the target's class and word scores to compute."""
        weights, corpus = weights_builder(model_type)
        assert isinstance(weights, FactoredWeights)
        gradient, _, _ = weights.get_gradient(corpus, range(len(corpus)))
        AdaGrad(weights=weights, step_size=0.1).update(gradient)
        examples = weights.examples(corpus, [2])
        expected = weights.log_probability(examples, cache=False)
        weights.log_probability(examples)

        calls: list[str] = []
        class_scores = weights._class_scores
        word_scores = weights._word_scores

        def counted_class_scores(*args):
            calls.append("class")
            return class_scores(*args)

        def counted_word_scores(*args):
            calls.append("word")
            return word_scores(*args)

        monkeypatch.setattr(weights, "_class_scores", counted_class_scores)
        monkeypatch.setattr(weights, "_word_scores", counted_word_scores)

        assert weights.log_probability(examples) == pytest.approx(expected)
        assert calls == []
        weights.log_probability(examples, cache=False)
        assert calls == ["class", "word"]

    @pytest.mark.parametrize(
        "model_type", [ModelType.BASE, ModelType.FACTORED, ModelType.CONDITIONAL]
    )
    def test_stale_cache_until_cleared(self, weights_builder, model_type):
        """Cached normalisers go stale after an update until cleared."""
        weights, corpus = weights_builder(model_type)
        examples = weights.examples(corpus, [2])
        weights.log_probability(examples)
        weights.data *= 1.5
        assert weights.log_probability(examples) != pytest.approx(
            weights.log_probability(examples, cache=False)
        )
        weights.clear_cache()
        assert weights.log_probability(examples) == pytest.approx(
            weights.log_probability(examples, cache=False)
        )


class TestUpdates:
    def test_sync_update_only_adds_touched_rows(self, weights_builder):
        """Synchronised updates copy only the touched context and output rows."""
        weights, corpus = weights_builder(ModelType.FACTORED)
        target = weights.zeros_like()
        gradient = weights.zeros_like()
        gradient.data[:] = 1.0
        words = MinibatchWords(context_words={2}, output_words={2, 3})
        target.sync_update(gradient, words)
        np.testing.assert_array_equal(target.Q[2], 1.0)
        assert not np.any(target.Q[[0, 1, 3, 4]])
        np.testing.assert_array_equal(target.B, [0.0, 0.0, 1.0, 1.0, 0.0])
        np.testing.assert_array_equal(target.C[0], 1.0)
        assert isinstance(target, FactoredWeights)
        np.testing.assert_array_equal(target.FB, 1.0)

    def test_sync_update_all_outputs(self, weights_builder):
        """Without an output word set every output row is updated."""
        weights, _ = weights_builder(ModelType.BASE)
        target = weights.zeros_like()
        gradient = weights.zeros_like()
        gradient.data[:] = 2.0
        target.sync_update(gradient, MinibatchWords(output_words=None))
        np.testing.assert_array_equal(target.R, 2.0)
        assert not np.any(target.Q)

    def test_merged_words(self):
        """Merging with an unrestricted output set makes the result unrestricted."""
        words = MinibatchWords(context_words={1}, output_words={2})
        words.merge(MinibatchWords(context_words={3}, output_words=None))
        assert words.context_words == {1, 3}
        assert words.output_words is None


class TestConditional:
    def test_expand_source_preserves_other_blocks(self, weights_builder):
        """Growing the source vocabulary keeps every other block's values."""
        weights, _ = weights_builder(ModelType.CONDITIONAL, source_window_width=1)
        assert isinstance(weights, ConditionalWeights)
        before = copy.deepcopy(weights)
        weights.expand_source(7, key=jax.random.PRNGKey(5))
        assert weights.config.source_vocab_size == 7
        assert weights.S.shape == (7, 3)
        assert sum(block.size for block in weights.layout) == weights.data.size
        for name in ["Q", "R", "B", "F", "FB"]:
            np.testing.assert_array_equal(getattr(weights, name), getattr(before, name))
        for after_t, before_t in zip(weights.T, before.T, strict=True):
            np.testing.assert_array_equal(after_t, before_t)
        assert np.shares_memory(weights.S, weights.data)

    def test_window_selects_aligned_source_words(self, weights_builder):
        """The source window is centred on the length-scaled target position."""
        weights, corpus = weights_builder(ModelType.CONDITIONAL, source_window_width=0)
        assert isinstance(weights, ConditionalWeights)
        examples = weights.examples(corpus, [0, 2])
        # sentence 0 has three source words and four target tokens
        assert weights._window(examples, 0) == (0, 0, 1)
        assert weights._window(examples, 1) == (2, 2, 3)

    def test_unknown_target_index_uses_whole_source(self, weights_builder):
        """Without a target index the whole source sentence is used."""
        weights, _ = weights_builder(ModelType.CONDITIONAL, source_window_width=1)
        assert isinstance(weights, ConditionalWeights)
        examples = weights.single_example(2, [0, 0], source=[0, 1], target_index=-1)
        assert weights._window(examples, 0) is None


class TestMaxent:
    @pytest.mark.parametrize(
        "overrides, mask",
        [
            ({}, [2.0, 2.0, 2.0]),
            # [b] was followed by classes 1 and 2, [b, a] only by class 2
            ({"sparse_features": True}, [0.0, 1.0, 2.0]),
        ],
        ids=["unconstrained", "sparse"],
    )
    def test_feature_gradient_matches_class_residuals(self, weights_builder, overrides, mask):
        """Class feature gradients are the class residuals on each allowed index."""
        weights, corpus = weights_builder(ModelType.MAXENT, **overrides)
        assert isinstance(weights, FactoredMaxentWeights)
        examples = weights.examples(corpus, [2])
        assert examples.history_of(0) == (3, 2)
        gradient, _, _ = weights.get_gradient(corpus, [2])
        assert isinstance(gradient, FactoredMaxentWeights)
        pv = weights.prediction_vectors(examples)
        scores = weights._class_scores(examples, pv)[0]
        residual = np.exp(scores) / np.exp(scores).sum()
        residual[weights.index.get_class(4)] -= 1.0
        np.testing.assert_allclose(
            gradient.U.get(examples.history_of(0)), np.array(mask) * residual
        )

    def test_training_step_moves_feature_weights(self, weights_builder):
        """An AdaGrad step moves the feature weights of seen histories."""
        weights, corpus = weights_builder(ModelType.MAXENT)
        assert isinstance(weights, FactoredMaxentWeights)
        gradient, _, _ = weights.get_gradient(corpus, range(len(corpus)))
        adagrad = weights.accumulator_like()
        adagrad.update_squared(gradient)
        weights.update_adagrad(gradient, adagrad, 0.1)
        assert np.any(weights.U.get((3, 2)))
