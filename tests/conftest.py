import time

import pytest

pytest_plugins = ["tests._fixtures.conftest"]


@pytest.fixture(autouse=True)
def no_sleep(mocker):
    mocker.patch.object(time, "sleep", lambda _seconds: None)


@pytest.fixture(autouse=True)
def patch_global_db_pool(mocker):
    """Route the shared database pool to a PoolFake for every test.

    Yields a dict whose ``pool`` entry is the PoolFake currently standing in
    for the process-wide pool (None until something asks for it).
    """
    from tests._fixtures import PoolFake

    holder = {"pool": None}

    def _init(minconn: int = 1, maxconn: int = 10):
        holder["pool"] = PoolFake(minconn=minconn, maxconn=maxconn)
        return holder["pool"]

    target = "src.database.connection"
    mocker.patch(f"{target}.init_global_pool", _init)
    mocker.patch(f"{target}.get_global_pool", lambda: holder["pool"] or _init())
    mocker.patch(f"{target}.close_global_pool", lambda: holder.update(pool=None))
    yield holder


@pytest.fixture(autouse=True)
def block_live_http(mocker):
    def _refuse(*args, **kwargs):
        raise AssertionError("unit tests must not open a real aiohttp.ClientSession")

    mocker.patch("aiohttp.ClientSession", _refuse)
    yield
