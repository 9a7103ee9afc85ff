import os
import sys
import json
import struct
import zlib
from types import SimpleNamespace

import pytest
from solders.pubkey import Pubkey

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, ROOT)

from fetch_idl import IDL_ACCOUNT_DISCRIMINATOR, resolve_idl_address  # noqa: E402

PROGRAM_ADDRESS = "ADcaide4vBtKuyZQqdU689YqEGZMCmS4tL35bdTv9wJa"

SAMPLE_IDL = {
    "version": "0.1.0",
    "name": "counter",
    "instructions": [
        {
            "name": "increment",
            "accounts": [{"name": "counter", "isMut": True, "isSigner": False}],
            "args": [],
        }
    ],
    "accounts": [
        {"name": "Counter", "type": {"kind": "struct", "fields": [{"name": "count", "type": "u64"}]}}
    ],
    "types": [],
}


def encode_idl_account(payload: bytes, discriminator: bytes = IDL_ACCOUNT_DISCRIMINATOR) -> bytes:
    return discriminator + bytes(Pubkey.default()) + struct.pack("<I", len(payload)) + payload


def encode_idl(idl) -> bytes:
    return encode_idl_account(zlib.compress(json.dumps(idl).encode()))


class FakeClient:
    """In-memory stand-in for solana.rpc.api.Client.get_account_info."""

    def __init__(self, accounts=None, error=None):
        self.accounts = accounts or {}
        self.error = error
        self.requests = []

    def get_account_info(self, pubkey, commitment=None):
        self.requests.append(pubkey)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(value=self.accounts.get(pubkey))


def account(data=b"", executable=False):
    return SimpleNamespace(data=data, executable=executable, lamports=1_000_000)


@pytest.fixture
def program_id():
    return Pubkey.from_string(PROGRAM_ADDRESS)


@pytest.fixture
def make_client(program_id):
    def _make(idl_data=None, executable=True, program_exists=True, error=None):
        accounts = {}
        if program_exists:
            accounts[program_id] = account(executable=executable)
        if idl_data is not None:
            accounts[resolve_idl_address(program_id)] = account(data=idl_data)
        return FakeClient(accounts, error=error)
    return _make
