from lbl_net.data.classes import ClassAssignment, WordToClassIndex
from lbl_net.data.corpus import Corpus, ContextProcessor
from lbl_net.data.dictionary import Dictionary

__all__ = [
    "ClassAssignment",
    "ContextProcessor",
    "Corpus",
    "Dictionary",
    "WordToClassIndex",
]
