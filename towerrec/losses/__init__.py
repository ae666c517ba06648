from .in_batch import in_batch_softmax_loss

__all__ = ["in_batch_softmax_loss"]
