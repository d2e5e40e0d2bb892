from collections.abc import Sequence
from pathlib import Path


class ConfigurationError(ValueError):
    """Raised when a model cannot be built from the given configuration."""


class NumericalError(ArithmeticError):
    def __init__(
        self,
        message: str,
        *,
        position: int | None = None,
        word_id: int | None = None,
        context: Sequence[int] | None = None,
    ):
        details = ", ".join(
            f"{name}={value}"
            for name, value in (
                ("position", position),
                ("word_id", word_id),
                ("context", None if context is None else list(context)),
            )
            if value is not None
        )
        super().__init__(message + (f" ({details})" if details else ""))
        self.position = position
        self.word_id = word_id
        self.context = context


class UnknownWordError(KeyError):
    def __init__(self, word: str):
        super().__init__(word)
        self.word = word

    def __str__(self) -> str:
        return f"Unknown word {self.word!r} in frozen dictionary."


class AbortTraining(RuntimeError):
    def __init__(
        self,
        message: str,
        training_progress: float | None = None,
        model_checkpoint_path: Path | None = None,
    ):
        super().__init__(message + (" " if message else "") + "Aborting training.")
        self.training_progress = training_progress
        self.model_checkpoint_path = model_checkpoint_path
