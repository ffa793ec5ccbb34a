# chatcache/cli.py
import asyncio
import json

from chatcache.core.config import get_settings
from chatcache.core.logging import setup_logging
from chatcache.services.response_cache import get_response_cache
from chatcache.services.sweeper import StaleSweeper


def sweep() -> None:
    setup_logging()
    report = asyncio.run(StaleSweeper().run_once())
    print(json.dumps(report.__dict__))


async def _stats() -> dict[str, object]:
    cache = get_response_cache()
    stats = await cache.stats()
    summary = await cache.activity.summary()
    return {
        "backend": "redis" if get_settings().redis_available else "local",
        "cache": stats.to_dict(),
        "cached_responses": await cache.size(),
        "activity": summary.__dict__,
    }


def stats() -> None:
    setup_logging()
    print(json.dumps(asyncio.run(_stats()), indent=2))


def pytest() -> None:
    import pytest
    # Run all tests in the tests/ directory, stop after first failure
    pytest.main(["-x", "tests"])
