import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from backend.services.wizard_service import WizardService


def test_manager_requires_initialize():
    with pytest.raises(RuntimeError):
        WizardService().manager


def test_health_check_reports_each_dependency():
    service = WizardService()
    service._redis = AsyncMock()
    service._redis.ping = AsyncMock(return_value=True)
    service._search = AsyncMock()
    service._search.ping = AsyncMock(side_effect=RuntimeError("es down"))

    checks = asyncio.run(service.health_check())

    assert checks["redis"]["status"] == "ok"
    assert checks["elasticsearch"] == {"status": "error", "error": "es down"}


def test_health_check_handles_redis_outage():
    service = WizardService()
    service._redis = AsyncMock()
    service._redis.ping = AsyncMock(side_effect=RedisConnectionError("refused"))

    checks = asyncio.run(service.health_check())

    assert checks["redis"] == {"status": "error", "error": "refused"}
    assert checks["elasticsearch"]["status"] == "error"


def test_close_releases_connections():
    service = WizardService()
    service._redis = AsyncMock()
    service._search = MagicMock()
    service._db = MagicMock()

    asyncio.run(service.close())

    service._redis.aclose.assert_awaited_once()
    service._search.es.close.assert_called_once()
    service._db.close.assert_called_once()
