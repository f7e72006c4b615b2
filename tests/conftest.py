import pytest
from eth_account import Account

from tests.fakes import CHAIN_ID, NETWORK, FakeChain, make_facilitator
from x402_facilitator.facilitator import Facilitator


@pytest.fixture
def payer():
    return Account.create()


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain(NETWORK, CHAIN_ID)


@pytest.fixture
def facilitator(chain: FakeChain) -> Facilitator:
    return make_facilitator(chain)
