import math

import pytest

from towerrec.metrics import hit_rate_at_k, mrr_at_k, ndcg_at_k, precision_recall_at_k


TRUE = [[1], [4, 5], [9]]
RANKED = [[1, 2, 3], [3, 5, 4], [0, 2, 3]]


class TestRankingMetrics:
    def test_hit_rate(self):
        assert hit_rate_at_k(TRUE, RANKED, 3) == pytest.approx(2 / 3)
        assert hit_rate_at_k(TRUE, RANKED, 1) == pytest.approx(1 / 3)

    def test_precision_recall(self):
        p, r = precision_recall_at_k(TRUE, RANKED, 3)
        assert p == pytest.approx((1 / 3 + 2 / 3 + 0) / 3)
        assert r == pytest.approx((1 + 1 + 0) / 3)

    def test_mrr(self):
        assert mrr_at_k(TRUE, RANKED, 3) == pytest.approx((1 + 0.5 + 0) / 3)

    def test_ndcg(self):
        # user 2: hits at ranks 2 and 3, ideal has them at 1 and 2
        dcg = 1 / math.log2(3) + 1 / math.log2(4)
        idcg = 1 + 1 / math.log2(3)
        assert ndcg_at_k(TRUE, RANKED, 3) == pytest.approx((1 + dcg / idcg + 0) / 3)

    def test_empty_inputs(self):
        assert hit_rate_at_k([], [], 10) == 0.0
        assert ndcg_at_k([], [], 10) == 0.0
