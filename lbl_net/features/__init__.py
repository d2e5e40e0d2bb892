from lbl_net.features.base import GlobalFeatureStore, MinibatchFeatureStore
from lbl_net.features.collision import (
    CollisionFeatureStore,
    CollisionMinibatchFeatureStore,
    CollisionSpace,
)
from lbl_net.features.context import (
    ClassContextExtractor,
    FeatureContextExtractor,
    FeatureContextHasher,
    FeatureContextKeyer,
    FeatureContextMapper,
    WordContextExtractor,
)
from lbl_net.features.initializer import FeatureStoreInitializer
from lbl_net.features.matcher import FeatureIndexesPair, FeatureMatcher
from lbl_net.features.sparse import SparseFeatureStore
from lbl_net.features.unconstrained import UnconstrainedFeatureStore

__all__ = [
    "ClassContextExtractor",
    "CollisionFeatureStore",
    "CollisionMinibatchFeatureStore",
    "CollisionSpace",
    "FeatureContextExtractor",
    "FeatureContextHasher",
    "FeatureContextKeyer",
    "FeatureContextMapper",
    "FeatureIndexesPair",
    "FeatureMatcher",
    "FeatureStoreInitializer",
    "GlobalFeatureStore",
    "MinibatchFeatureStore",
    "SparseFeatureStore",
    "UnconstrainedFeatureStore",
    "WordContextExtractor",
]
