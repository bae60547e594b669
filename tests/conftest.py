"""Shared test fixtures for vpnstack tests."""
import pytest

from vpnstack.core.config import set_settings
from vpnstack.core.layout import InstallLayout
from vpnstack.models.parameters import collect
from vpnstack.models.secrets import SecretMaterial
from vpnstack.services.docker_compose import ComposeRunner
from vpnstack.services.password_hasher import AutheliaPasswordHasher

ADMIN_PASSWORD = "correct-horse-battery"


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch):
    """Every test starts from default settings and no mock flag."""
    monkeypatch.delenv("VPNSTACK_MOCK", raising=False)
    monkeypatch.delenv("VPNSTACK_CONFIG", raising=False)
    monkeypatch.delenv("VPNSTACK_ADMIN_PASSWORD", raising=False)
    set_settings(None)
    yield
    set_settings(None)


@pytest.fixture
def param_values():
    """Minimal operator answers for a Let's Encrypt install."""
    return {
        'domain': 'example.com',
        'vpn_host': '203.0.113.10',
        'admin_password': ADMIN_PASSWORD,
    }


@pytest.fixture
def params(param_values):
    return collect(param_values)


@pytest.fixture
def selfsigned_params(param_values):
    return collect({**param_values, 'tls_method': 'selfsigned'})


@pytest.fixture
def secrets():
    """Fixed secret material so synthesized output is reproducible."""
    return SecretMaterial(
        jwt_secret="a" * 64,
        session_secret="b" * 64,
        storage_encryption_key="c" * 64,
        postgres_password="pg-password-123456789012",
        redis_password="redis-password-1234567890",
        admin_password_hash="$argon2id$v=19$m=65536,t=3,p=4$c2FsdA$aGFzaA",
    )


@pytest.fixture
def layout(tmp_path):
    return InstallLayout.at(tmp_path / "vpnstack")


@pytest.fixture
def mock_hasher():
    return AutheliaPasswordHasher(mock=True)


@pytest.fixture
def mock_runner(layout):
    return ComposeRunner(layout.root, mock=True)
