import asyncio
import base64
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before any import that might build the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")
# No Redis in tests: the store is authoritative and results stay deterministic
os.environ["REDIS_URL"] = ""
os.environ["MEMORY_STATE_PATH"] = ""
os.environ["MULTI_TENANT"] = "false"

import pytest  # noqa: E402
from cryptography.hazmat.primitives import hashes, serialization  # noqa: E402
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from fleetauth.service.runtime import reset_runtime_for_tests  # noqa: E402


class DeviceKey:
    """Private key held by a simulated device."""

    def __init__(self, private_key):
        self.private_key = private_key
        self.public_pem = (
            private_key.public_key()
            .public_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PublicFormat.SubjectPublicKeyInfo,
            )
            .decode("ascii")
        )

    def sign(self, body: bytes) -> str:
        if isinstance(self.private_key, rsa.RSAPrivateKey):
            raw = self.private_key.sign(body, padding.PKCS1v15(), hashes.SHA256())
        else:
            raw = self.private_key.sign(body, ec.ECDSA(hashes.SHA256()))
        return base64.b64encode(raw).decode("ascii")


def _rsa_key() -> DeviceKey:
    return DeviceKey(rsa.generate_private_key(public_exponent=65537, key_size=2048))


@pytest.fixture(scope="session")
def device_key() -> DeviceKey:
    return _rsa_key()


@pytest.fixture(scope="session")
def other_device_key() -> DeviceKey:
    return _rsa_key()


@pytest.fixture(scope="session")
def ec_device_key() -> DeviceKey:
    return DeviceKey(ec.generate_private_key(ec.SECP256R1()))


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
