"""Shared fixtures for indexer tests."""

import pytest

from layered_options_indexer import (
    EventProcessor,
    QueryService,
    ScanScheduler,
    StateStore,
    config_from_dict,
)
from tests.fakes import BLOCK_TIME, CONTRACT, FakeChain


@pytest.fixture
def store():
    return StateStore()


@pytest.fixture
def processor(store):
    return EventProcessor(store)


@pytest.fixture
def clock():
    """Mutable wall clock; set ``clock.now`` to move time."""

    class _Clock:
        now = BLOCK_TIME + 10_000

        def __call__(self):
            return self.now

    return _Clock()


@pytest.fixture
def queries(store, clock):
    return QueryService(store, decimals=18, clock=clock)


@pytest.fixture
def chain():
    return FakeChain(height=1_000)


@pytest.fixture
def scheduler(chain, processor):
    return ScanScheduler(
        chain=chain,
        processor=processor,
        contract_addr=CONTRACT,
        interval_sec=30,
        lookback_blocks=1_000,
        chunk_blocks=2_000,
    )


@pytest.fixture
def config():
    return config_from_dict(
        {
            "HTTP_RPC_URL": "http://127.0.0.1:8545",
            "OPTIONS_CONTRACT_ADDR": CONTRACT,
            "LOOKBACK_BLOCKS": 1_000,
        }
    )
