from .errors import (
    ConfigurationError,
    EmptyBatchError,
    IndexOutOfRangeError,
    StaleIndexError,
    TowerRecError,
)
from .models import EmbeddingTable, Tower, TwoTower
from .trainer import FitResult, TwoTowerTrainer

__all__ = [
    "ConfigurationError",
    "EmptyBatchError",
    "IndexOutOfRangeError",
    "StaleIndexError",
    "TowerRecError",
    "EmbeddingTable",
    "Tower",
    "TwoTower",
    "FitResult",
    "TwoTowerTrainer",
]
