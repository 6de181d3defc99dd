import pytest

from app.services.agent_loop.rate_limit import reset_token_bucket


@pytest.fixture(autouse=True)
def fresh_token_bucket():
    reset_token_bucket()
    yield
    reset_token_bucket()
