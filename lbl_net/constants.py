from typing import Final

EPSILON: Final[float] = 1e-8
INIT_STD: Final[float] = 0.1

START_TOKEN: Final[str] = "<s>"
END_TOKEN: Final[str] = "</s>"
START_ID: Final[int] = 0
END_ID: Final[int] = 1

DEFAULT_SEED: Final[int] = 1
