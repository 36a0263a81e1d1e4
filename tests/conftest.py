import pytest
import pytest_asyncio

from attachments import AttachmentManager
from demands import DemandManager
from indexer import BlockIndexer
from matches import Match2Manager
from transactions import TransactionManager
from tests.fakes import FakeIdentity, FakeIpfs, FakeLedger, FakeStore

@pytest.fixture
def store():
    return FakeStore()

@pytest.fixture
def ledger():
    return FakeLedger(sender='5Alice')

@pytest.fixture
def identity():
    return FakeIdentity('5Alice', aliases={'5Alice': 'alice', '5Bob': 'bob'})

@pytest.fixture
def ipfs():
    return FakeIpfs()

@pytest.fixture
def attachments(store, ipfs):
    return AttachmentManager(store, ipfs)

@pytest.fixture
def transactions(ledger, store):
    """Transaction manager with the finality watch disabled, so only the indexer resolves rows."""
    return TransactionManager(ledger, store, watch_finality=False)

@pytest.fixture
def demands(transactions, store, identity, attachments):
    return DemandManager(transactions, store, identity, attachments)

@pytest.fixture
def matches(transactions, store, identity, attachments):
    return Match2Manager(transactions, store, identity, attachments)

@pytest_asyncio.fixture
async def indexer(ledger, store):
    """Indexer whose checkpoint is the ledger's current finalised head."""
    indexer = BlockIndexer(ledger, store, batch_size=1, poll_period=0.01, retry_max_delay=0.01)
    indexer.running = True
    await indexer.get_checkpoint()
    return indexer

@pytest_asyncio.fixture
async def parameters(attachments):
    """Parameters attachment for new demands."""
    return await attachments.create('parameters.json', b'{"quantity": 10}')
