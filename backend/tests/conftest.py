"""
Shared test fixtures and configuration.
"""

import pytest
import os

# Set test environment variables before importing app modules
os.environ.setdefault("STREAM_API_SECRET", "test-secret-key-for-testing")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOCAL_STORAGE_PATH", "/tmp/shopchat_test_data")
os.environ.setdefault("LOG_FILE_ENABLED", "false")

from shopchat.config import ChatConfig
from shopchat.core.credentials import LocalCredentialIssuer
from shopchat.models import ProductRef
from shopchat.registry import LocalChannelRegistry
from shopchat.storage import LocalStorage
from shopchat.utils.auth import TokenSigner

AGENT = "sales-agent"


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def config():
    return ChatConfig(api_key="test-key", agent_identity=AGENT)


@pytest.fixture
def signer():
    return TokenSigner("test-secret-key-for-testing")


@pytest.fixture
def issuer(signer):
    return LocalCredentialIssuer(signer)


@pytest.fixture
def storage(tmp_path):
    return LocalStorage(str(tmp_path / "data"))


@pytest.fixture
def registry(storage, signer):
    return LocalChannelRegistry(storage, signer=signer)


@pytest.fixture
def headphones():
    return ProductRef(sku="HP-100", name="Wireless Headphones", price=199.99)
