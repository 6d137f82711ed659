import pytest

from tests._fixtures import (
    InstrumentRepositoryFake,
    PoolFake,
    set_factory_seed,
)

FACTORY_SEED = 42


@pytest.fixture(scope="session", autouse=True)
def factory_seed():
    """Pin Faker and polyfactory output for the whole session."""
    set_factory_seed(FACTORY_SEED)
    return FACTORY_SEED


@pytest.fixture
def pool_fake():
    return PoolFake()


@pytest.fixture
def repo_fake():
    """Empty in-memory instrument repository."""
    return InstrumentRepositoryFake()
