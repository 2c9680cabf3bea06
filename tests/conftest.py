"""Pytest configuration and fixtures."""

import struct

import pytest
from solders.pubkey import Pubkey

from pf_rpc import SignatureInfo


def _key(n: int) -> str:
    return str(Pubkey(bytes([n]) * 32))


@pytest.fixture
def key():
    """Deterministic, valid base58 address for a small integer."""
    return _key


@pytest.fixture
def mint() -> str:
    return _key(1)


@pytest.fixture
def creator() -> str:
    return _key(2)


@pytest.fixture
def curve_blob(creator):
    """Build a raw bonding-curve account blob."""

    def build(complete: bool = False, creator_key: str = None, real_sol: int = 5_000_000_000) -> bytes:
        owner = bytes(Pubkey.from_string(creator_key or creator))
        return (b"\x17\xb7\xf8\x37\x60\xd8\xac\x60"
                + struct.pack("<QQQQQ", 1_073_000_000_000_000, 30_000_000_000,
                              793_100_000_000_000, real_sol, 1_000_000_000_000_000)
                + bytes([1 if complete else 0])
                + owner
                + b"\x00" * 8)

    return build


@pytest.fixture
def make_tx():
    """Build a getTransaction (json encoding) record."""

    def build(signature: str, keys, pre=None, post=None, pre_tokens=None,
              post_tokens=None, slot: int = 250_000_000, block_time=1_700_000_000,
              err=None, loaded=None):
        meta = {
            "err": err,
            "preBalances": pre if pre is not None else [0] * len(keys),
            "postBalances": post if post is not None else [0] * len(keys),
            "preTokenBalances": pre_tokens or [],
            "postTokenBalances": post_tokens or [],
        }
        if loaded is not None:
            meta["loadedAddresses"] = loaded
        return {
            "slot": slot,
            "blockTime": block_time,
            "meta": meta,
            "transaction": {
                "signatures": [signature],
                "message": {"accountKeys": list(keys)},
            },
        }

    return build


def token_row(owner: str, mint: str, amount: int, index: int = 3) -> dict:
    return {
        "accountIndex": index,
        "mint": mint,
        "owner": owner,
        "uiTokenAmount": {"amount": str(amount), "decimals": 9,
                          "uiAmount": amount / 1e9, "uiAmountString": str(amount / 1e9)},
    }


@pytest.fixture
def token_balance():
    return token_row


class FakeSource:
    """In-memory stand-in for RpcSource."""

    def __init__(self):
        self.accounts = {}
        self.signatures = {}        # address -> newest-first list[SignatureInfo]
        self.transactions = {}
        self.balances = {}
        self.token_balances = {}
        self.slot = 300_000_000
        self.fail_next = None
        self.tx_calls = []
        self.closed = False

    def _maybe_fail(self, method):
        if self.fail_next == method:
            self.fail_next = None
            raise RuntimeError(f"{method} unavailable")

    def push_signature(self, address: str, signature: str, err=None):
        row = SignatureInfo(signature=signature, slot=self.slot, err=err)
        self.signatures.setdefault(address, []).insert(0, row)

    async def get_account_data(self, address):
        self._maybe_fail("get_account_data")
        return self.accounts.get(address)

    async def get_signatures(self, address, limit=100):
        self._maybe_fail("get_signatures")
        return list(self.signatures.get(address, []))[:limit]

    async def get_transaction(self, signature):
        self._maybe_fail("get_transaction")
        self.tx_calls.append(signature)
        return self.transactions.get(signature)

    async def get_balance(self, address):
        self._maybe_fail("get_balance")
        return self.balances.get(address, 0)

    async def get_token_balance(self, owner, mint):
        self._maybe_fail("get_token_balance")
        return self.token_balances.get(owner, 0)

    async def get_slot(self):
        self._maybe_fail("get_slot")
        return self.slot

    async def close(self):
        self.closed = True


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()
