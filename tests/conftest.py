from unittest.mock import patch

import pytest

from fakes import FakeGateway, FakeRedis
from verifyflow.core.session_manager import VerificationSessionManager
from verifyflow.core.step_graph import get_graph
from verifyflow.settings import settings


@pytest.fixture(autouse=True)
def fake_redis():
    """Every test gets a fresh in-memory Redis behind get_redis()."""
    fake = FakeRedis()
    with patch("verifyflow.store.redis_conn.Redis") as mock_redis_cls, \
         patch.object(settings, "PROVIDER_BACKOFF_BASE_MS", 0), \
         patch.object(settings, "ENABLE_REVIEW_HANDOFF", False):
        mock_redis_cls.from_url.return_value = fake
        yield fake


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def manager(gateway):
    return VerificationSessionManager(gateway=gateway, graph=get_graph())
