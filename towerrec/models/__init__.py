from .towers import EmbeddingTable, Tower
from .twotower import TwoTower

__all__ = ["EmbeddingTable", "Tower", "TwoTower"]
