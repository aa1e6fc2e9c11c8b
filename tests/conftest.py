import asyncio

import pytest

from order_service.database import build_database, init_db
from tests.helpers import FakeClock, RecordingNotifier, Services


@pytest.fixture
def db_url(tmp_path):
    url = f"sqlite:///{tmp_path / 'orders.db'}"
    init_db(url)
    return url


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def run(db_url, clock, notifier):
    """Run `scenario(services)` on a fresh event loop against the test database."""

    def runner(scenario):
        async def main():
            database = build_database(db_url)
            await database.connect()
            try:
                return await scenario(Services(database, clock, notifier))
            finally:
                await database.disconnect()

        return asyncio.run(main())

    return runner
