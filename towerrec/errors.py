from __future__ import annotations


class TowerRecError(Exception):
    """Base class for errors raised by towerrec."""


class ConfigurationError(TowerRecError, ValueError):
    """Raised at construction when the model/tower configuration is inconsistent."""


class IndexOutOfRangeError(TowerRecError, IndexError):
    """Raised when a user/item index falls outside its table's [0, count) range."""


class StaleIndexError(TowerRecError, RuntimeError):
    """Raised when scoring without an item index built after the last parameter update."""


class EmptyBatchError(TowerRecError, ValueError):
    """Raised when a training step receives zero (user, item) pairs."""
