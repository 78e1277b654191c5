import importlib.util
import json
from pathlib import Path

import pytest

from fleetauth.service.runtime import get_runtime

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "device_admin.py"


@pytest.fixture
def device_admin():
    spec = importlib.util.spec_from_file_location("device_admin", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_accept_and_show(device_admin, capsys):
    device, _ = get_runtime().store.create_or_get_device("id-0001", "pem", tenant_id="")

    assert device_admin.main(["accept", device.id]) == 0
    assert json.loads(capsys.readouterr().out)["status"] == "accepted"

    assert device_admin.main(["show", device.id]) == 0
    assert json.loads(capsys.readouterr().out)["id"] == device.id


def test_list_filters_by_status(device_admin, capsys):
    store = get_runtime().store
    store.create_or_get_device("id-a", "pem", tenant_id="")
    store.create_or_get_device("id-b", "pem", tenant_id="")

    assert device_admin.main(["list", "--status", "pending", "--per-page", "1"]) == 0
    out = json.loads(capsys.readouterr().out)
    assert len(out["items"]) == 1
    assert out["has_next"] is True


def test_unknown_device_reports_error(device_admin, capsys):
    assert device_admin.main(["reject", "missing"]) == 1
    assert "device not found" in capsys.readouterr().err


def test_tenant_option_scopes_lookup(device_admin, capsys):
    device, _ = get_runtime().store.create_or_get_device("id-0001", "pem", tenant_id="acme")
    assert device_admin.main(["show", device.id]) == 1
    assert device_admin.main(["--tenant", "acme", "show", device.id]) == 0
