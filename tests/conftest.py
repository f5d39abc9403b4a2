import hashlib
import os
import pathlib
import sys
import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import shieldcore`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from shieldcore.chain import InMemoryChain  # noqa: E402
from shieldcore.config import get_config_manager  # noqa: E402
from shieldcore.indexer import SyncEngine  # noqa: E402
from shieldcore.keys import Credential  # noqa: E402
from shieldcore.note import Note, NoteCodec, TokenData  # noqa: E402
from shieldcore.resilience import BackoffStrategy, RetryPolicy  # noqa: E402


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow correctness tests (skipped unless SHIELDCORE_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    run_slow = _env_flag('SHIELDCORE_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set SHIELDCORE_RUN_SLOW=1 to enable'))


# ─────────────────────────────────────────────────────────────────────────────
# Shared fixtures
# ─────────────────────────────────────────────────────────────────────────────

POOL_ADDRESS = "0x" + "5c" * 20
TOKEN_ADDRESS = "0x" + "a0" * 20


def credential_for(label: str) -> Credential:
    """Deterministic credential derived from a label."""
    seed = hashlib.sha512(label.encode()).digest()
    return Credential.from_seed(seed)


@pytest.fixture(autouse=True)
def _reset_config():
    manager = get_config_manager()
    manager.reset()
    yield
    manager.reset()


@pytest.fixture(scope="session")
def alice() -> Credential:
    return credential_for("alice")


@pytest.fixture(scope="session")
def bob() -> Credential:
    return credential_for("bob")


@pytest.fixture
def token() -> TokenData:
    return TokenData.erc20(TOKEN_ADDRESS)


@pytest.fixture
def codec() -> NoteCodec:
    return NoteCodec()


@pytest.fixture
def chain() -> InMemoryChain:
    return InMemoryChain(contract_address=POOL_ADDRESS)


@pytest.fixture
def fast_retry() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=3,
        base_delay_seconds=0,
        backoff_strategy=BackoffStrategy.FIXED,
    )


@pytest.fixture
def make_engine(chain, fast_retry):
    def factory(**kwargs) -> SyncEngine:
        kwargs.setdefault("contract_address", POOL_ADDRESS)
        kwargs.setdefault("root_verifier", chain)
        kwargs.setdefault("retry_policy", fast_retry)
        return SyncEngine(chain, **kwargs)
    return factory


@pytest.fixture
def shield(chain, codec):
    """Shield ``value`` of ``token`` to ``credential`` directly on the chain; returns the note."""
    def _shield(credential: Credential, token: TokenData, value: int) -> Note:
        note = Note.create(credential.master_public_key, token, value)
        chain.emit_shield([note], [codec.encrypt_shield(note, credential.viewing_key.public_bytes)])
        return note
    return _shield
