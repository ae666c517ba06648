import pytest
import torch

from towerrec.models.twotower import TwoTower
from towerrec.trainer import TwoTowerTrainer


@pytest.fixture(autouse=True)
def _seed():
    torch.manual_seed(0)


@pytest.fixture
def shallow_model():
    return TwoTower(n_users=4, n_items=5, embed_dim=2)


@pytest.fixture
def deep_model():
    genres = torch.eye(5, 3)
    return TwoTower(
        n_users=6,
        n_items=5,
        embed_dim=4,
        user_layers=(8, 3),
        item_layers=(8, 3),
        item_features=genres,
    )


@pytest.fixture
def shallow_trainer(shallow_model):
    return TwoTowerTrainer(shallow_model, lr=0.01)
