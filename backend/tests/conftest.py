import os

import pytest

# Set env vars before any etl_worker module is imported so
# pydantic-settings picks them up instead of a developer's .env.
_test_env = {
    "POSTGRES_HOST": "localhost",
    "POSTGRES_DB": "analytics_test",
    "POSTGRES_USER": "testuser",
    "POSTGRES_PASSWORD": "testpassword",
    "REDIS_URL": "redis://localhost:6379/15",
    "CLICKHOUSE_HOST": "localhost",
    "CLICKHOUSE_DATABASE": "analytics_test",
    "ETL_IO_RETRY_DELAY_SECONDS": "0",
}

for key, value in _test_env.items():
    os.environ.setdefault(key, value)


class FakeRedis:
    """In-memory stand-in for the few redis.asyncio calls the worker makes."""

    def __init__(self) -> None:
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.store:
            return None
        self.store[key] = value
        if ex is not None:
            self.ttls[key] = ex
        else:
            self.ttls.pop(key, None)
        return True

    async def get(self, key):
        return self.store.get(key)

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def eval(self, script, numkeys, *keys_and_args):
        # the only script the worker runs: delete KEYS[1] if it still equals ARGV[1]
        keys, args = keys_and_args[:numkeys], keys_and_args[numkeys:]
        if self.store.get(keys[0]) == args[0]:
            return await self.delete(keys[0])
        return 0

    async def ping(self):
        return True


@pytest.fixture
def fake_redis():
    return FakeRedis()
