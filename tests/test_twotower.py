import numpy as np
import pytest
import torch

from towerrec.errors import ConfigurationError, IndexOutOfRangeError, StaleIndexError
from towerrec.models.twotower import TwoTower


class TestConstruction:
    def test_mismatched_tower_outputs(self):
        with pytest.raises(ConfigurationError, match="must match"):
            TwoTower(4, 5, embed_dim=8, user_layers=(16, 8), item_layers=(16, 4))

    def test_one_sided_tower_must_match_embedding(self):
        with pytest.raises(ConfigurationError):
            TwoTower(4, 5, embed_dim=8, user_layers=(), item_layers=(6,))
        model = TwoTower(4, 5, embed_dim=8, user_layers=(), item_layers=(16, 8))
        assert model.latent_dim == 8

    def test_non_positive_counts(self):
        with pytest.raises(ConfigurationError):
            TwoTower(0, 5)
        with pytest.raises(ConfigurationError):
            TwoTower(4, 0)

    def test_item_feature_rows_must_match(self):
        with pytest.raises(ConfigurationError):
            TwoTower(4, 5, embed_dim=2, item_layers=(2,), user_layers=(2,), item_features=torch.ones(4, 3))

    def test_feature_dim_conflict(self):
        with pytest.raises(ConfigurationError):
            TwoTower(4, 5, embed_dim=2, item_layers=(2,), user_layers=(2,),
                     item_feat_dim=2, item_features=np.ones((5, 3)))

    def test_kwargs_roundtrip(self, deep_model):
        clone = TwoTower.from_kwargs(deep_model.model_kwargs())
        clone.load_state_dict(deep_model.state_dict())
        items = torch.arange(5)
        assert torch.equal(clone.encode_items(items), deep_model.encode_items(items))
        assert torch.equal(clone.item_features, deep_model.item_features)


class TestEncoders:
    def test_shallow_encoders_return_raw_embeddings(self, shallow_model):
        users = torch.tensor([3, 1])
        assert torch.equal(shallow_model.encode_users(users), shallow_model.user_emb.weight[[3, 1]])
        assert torch.equal(shallow_model.encode_items([4]), shallow_model.item_emb.weight[[4]])

    def test_stored_item_features_used(self, deep_model):
        items = torch.tensor([0, 2])
        with_stored = deep_model.encode_items(items)
        explicit = deep_model.encode_items(items, deep_model.item_features[items])
        assert torch.equal(with_stored, explicit)
        zeros = deep_model.encode_items(items, torch.zeros(2, 3))
        assert not torch.equal(with_stored, zeros)

    def test_out_of_range(self, shallow_model):
        with pytest.raises(IndexOutOfRangeError):
            shallow_model.encode_users([4])
        with pytest.raises(IndexOutOfRangeError):
            shallow_model.encode_items([-1])

    def test_forward_is_rowwise_dot(self, deep_model):
        u = torch.tensor([0, 5]); i = torch.tensor([1, 3])
        expected = (deep_model.encode_users(u) * deep_model.encode_items(i)).sum(-1)
        assert torch.allclose(deep_model(u, i), expected)


class TestItemIndex:
    def test_score_before_build_raises(self, shallow_model):
        with pytest.raises(StaleIndexError):
            shallow_model.score_user(0)
        with pytest.raises(StaleIndexError):
            shallow_model.item_vectors()

    def test_stale_after_update(self, shallow_model):
        shallow_model.build_item_index()
        assert shallow_model.index_is_fresh
        shallow_model.mark_updated()
        assert not shallow_model.index_is_fresh
        with pytest.raises(StaleIndexError, match="stale"):
            shallow_model.score_user(0)

    def test_load_state_dict_invalidates(self, shallow_model):
        shallow_model.build_item_index()
        shallow_model.load_state_dict(shallow_model.state_dict())
        with pytest.raises(StaleIndexError):
            shallow_model.score_user(0)

    @pytest.mark.parametrize("cast", [lambda m: m.double(), lambda m: m.to("cpu"), lambda m: m.float()])
    def test_dtype_or_device_move_invalidates(self, shallow_model, cast):
        shallow_model.build_item_index()
        cast(shallow_model)
        assert not shallow_model.index_is_fresh
        with pytest.raises(StaleIndexError, match="stale"):
            shallow_model.score_user(0)

    def test_rebuild_after_double_uses_new_dtype(self, shallow_model):
        shallow_model.build_item_index()
        shallow_model.double()
        index = shallow_model.build_item_index()
        assert index.dtype == torch.float64
        scores, _ = shallow_model.score_user(0)
        assert scores.dtype == np.float64

    def test_index_shape_and_content(self, deep_model):
        index = deep_model.build_item_index()
        assert tuple(index.shape) == (5, 3)
        assert torch.equal(index, deep_model.encode_items(torch.arange(5)))
        assert deep_model.item_vectors() is index

    def test_rebuild_replaces_snapshot(self, shallow_model):
        first = shallow_model.build_item_index()
        with torch.no_grad():
            shallow_model.item_emb.weight.add_(1.0)
        shallow_model.mark_updated()
        second = shallow_model.build_item_index()
        assert shallow_model.item_vectors() is second
        assert not torch.equal(first, second)

    def test_score_user_full_ranking(self, deep_model):
        deep_model.build_item_index()
        scores, ranked = deep_model.score_user(2)
        assert scores.shape == (5,)
        assert np.all(np.isfinite(scores))
        assert sorted(ranked.tolist()) == list(range(5))
        assert np.all(np.diff(scores[ranked]) <= 0)
        u = deep_model.encode_users([2])[0]
        expected = (deep_model.item_vectors() @ u).detach().numpy()
        assert np.allclose(scores, expected, atol=1e-6)

    def test_score_user_deterministic(self, deep_model):
        deep_model.build_item_index()
        s1, r1 = deep_model.score_user(1)
        s2, r2 = deep_model.score_user(1)
        assert np.array_equal(s1, s2)
        assert np.array_equal(r1, r2)

    def test_ties_keep_index_order(self, shallow_model):
        with torch.no_grad():
            shallow_model.item_emb.weight.copy_(torch.tensor(
                [[1.0, 0.0], [2.0, 0.0], [1.0, 0.0], [2.0, 0.0], [0.0, 0.0]]
            ))
            shallow_model.user_emb.weight[0] = torch.tensor([1.0, 0.0])
        shallow_model.mark_updated()
        shallow_model.build_item_index()
        _, ranked = shallow_model.score_user(0)
        assert ranked.tolist() == [1, 3, 0, 2, 4]

    def test_score_user_out_of_range(self, shallow_model):
        shallow_model.build_item_index()
        with pytest.raises(IndexOutOfRangeError):
            shallow_model.score_user(4)

    def test_score_user_with_feature_row(self):
        model = TwoTower(3, 4, embed_dim=2, user_layers=(2,), item_layers=(2,), user_feat_dim=2)
        model.build_item_index()
        s_default, _ = model.score_user(0)
        s_zero, _ = model.score_user(0, [0.0, 0.0])
        s_feat, _ = model.score_user(0, [1.0, -1.0])
        assert np.allclose(s_default, s_zero)
        assert s_feat.shape == (4,)

    def test_score_user_rejects_features_tower_does_not_take(self, deep_model):
        deep_model.build_item_index()
        assert deep_model.user_tower.feat_dim == 0
        with pytest.raises(ValueError, match="feat_dim=0"):
            deep_model.score_user(0, [1.0, 2.0])

    def test_score_users_batch(self, deep_model):
        deep_model.build_item_index()
        batch = deep_model.score_users([0, 3])
        assert tuple(batch.shape) == (2, 5)
        single, _ = deep_model.score_user(3)
        assert np.allclose(batch[1].numpy(), single, atol=1e-6)
