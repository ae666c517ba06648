import math

import pytest
import torch
import torch.nn.functional as F

from towerrec.errors import EmptyBatchError
from towerrec.losses import in_batch_softmax_loss


class TestInBatchSoftmaxLoss:
    def test_matches_manual_cross_entropy(self):
        U = torch.tensor([[1.0, 0.0], [0.0, 2.0], [1.0, 1.0]])
        V = torch.tensor([[0.5, 0.5], [1.0, -1.0], [0.0, 1.0]])
        logits = U @ V.T
        log_probs = F.log_softmax(logits, dim=1)
        expected = -log_probs.diagonal().mean()
        assert torch.allclose(in_batch_softmax_loss(U, V), expected)

    def test_uniform_logits_give_log_batch(self):
        U = torch.zeros(4, 3)
        V = torch.randn(4, 3)
        assert float(in_batch_softmax_loss(U, V)) == pytest.approx(math.log(4), rel=1e-6)

    def test_l2_penalty_is_sum_of_squares(self):
        U = torch.tensor([[1.0, 2.0]])
        V = torch.tensor([[0.0, 3.0]])
        # single-row batch: cross-entropy term is 0
        loss = in_batch_softmax_loss(U, V, l2_reg=0.1)
        assert float(loss) == pytest.approx(0.1 * (1 + 4 + 9))

    def test_shape_checks(self):
        with pytest.raises(ValueError):
            in_batch_softmax_loss(torch.zeros(2, 3), torch.zeros(3, 3))
        with pytest.raises(ValueError):
            in_batch_softmax_loss(torch.zeros(3), torch.zeros(3))

    def test_empty_batch(self):
        with pytest.raises(EmptyBatchError):
            in_batch_softmax_loss(torch.zeros(0, 3), torch.zeros(0, 3))

    def test_duplicate_items_are_negatives(self):
        U = torch.tensor([[1.0, 0.0], [1.0, 0.0]])
        V = torch.tensor([[1.0, 0.0], [1.0, 0.0]])
        # the same item in both rows: each row splits probability 50/50
        assert float(in_batch_softmax_loss(U, V)) == pytest.approx(math.log(2))
