import json
import os
import stat

import pytest

from gateway.store import ConfigStore
from gateway.token import (
    persist_gateway_token,
    read_gateway_token,
    resolve_gateway_token,
    token_path,
)


def test_override_wins(tmp_path):
    persist_gateway_token(str(tmp_path), "from-file")
    assert resolve_gateway_token(str(tmp_path), "explicit") == "explicit"


def test_persisted_token_reused(tmp_path):
    persist_gateway_token(str(tmp_path), "from-file")
    assert resolve_gateway_token(str(tmp_path)) == "from-file"


def test_generated_token_is_persisted_owner_only(tmp_path):
    state_dir = str(tmp_path / "state")
    token = resolve_gateway_token(state_dir)

    assert len(token) == 64
    int(token, 16)
    assert read_gateway_token(state_dir) == token
    assert resolve_gateway_token(state_dir) == token

    mode = stat.S_IMODE(os.stat(token_path(state_dir)).st_mode)
    assert mode == 0o600


def test_token_file_holds_raw_text(tmp_path):
    persist_gateway_token(str(tmp_path), "abc123")
    with open(token_path(str(tmp_path)), "rb") as f:
        assert f.read() == b"abc123"


def test_blank_token_file_is_ignored(tmp_path):
    (tmp_path / "gateway.token").write_text("  \n")
    assert read_gateway_token(str(tmp_path)) is None
    assert resolve_gateway_token(str(tmp_path)) != ""


def test_persist_tightens_existing_file(tmp_path):
    path = tmp_path / "gateway.token"
    path.write_text("old")
    path.chmod(0o644)
    persist_gateway_token(str(tmp_path), "new")
    assert stat.S_IMODE(path.stat().st_mode) == 0o600
    assert path.read_text() == "new"


def test_store_round_trip_and_reset(tmp_path):
    store = ConfigStore(str(tmp_path / "nested" / "openclaw.json"))
    assert not store.exists()

    store.save({"gateway": {"port": 1}})
    assert store.exists()
    assert store.load() == {"gateway": {"port": 1}}
    assert not os.path.exists(store.path + ".tmp")

    assert store.reset() is True
    assert store.reset() is False


def test_store_rejects_invalid_documents(tmp_path):
    path = tmp_path / "openclaw.json"
    store = ConfigStore(str(path))

    path.write_text("{broken")
    with pytest.raises(json.JSONDecodeError):
        store.load()

    path.write_text("[1, 2]")
    with pytest.raises(ValueError):
        store.load()
