"""
🔌 Solana JSON-RPC data source
Thin aiohttp wrapper around the handful of calls the fee watcher needs:
account blobs, signature listings, full transactions and raw balances.
Every call runs at the configured commitment (default "confirmed").
"""

import asyncio
import base64
import logging
import ssl
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp
import certifi

log = logging.getLogger("rpc")

DEFAULT_RPC_URL = "https://api.mainnet-beta.solana.com"


class RpcError(RuntimeError):
    """Raised when a JSON-RPC call still fails after all retries."""


@dataclass(frozen=True)
class SignatureInfo:
    signature: str
    slot: int
    block_time: Optional[int] = None
    err: Optional[Any] = None

    @classmethod
    def from_rpc(cls, row: Dict) -> "SignatureInfo":
        return cls(signature=row["signature"], slot=row.get("slot", 0),
                   block_time=row.get("blockTime"), err=row.get("err"))


def ssl_connector() -> aiohttp.TCPConnector:
    ctx = ssl.create_default_context(cafile=certifi.where())
    return aiohttp.TCPConnector(ssl=ctx)


class RpcSource:
    def __init__(self, rpc_url: str = DEFAULT_RPC_URL, commitment: str = "confirmed",
                 timeout: float = 8, retries: int = 3):
        self.rpc_url = rpc_url
        self.commitment = commitment
        self.timeout = timeout
        self.retries = retries
        self.session: Optional[aiohttp.ClientSession] = None
        self._req_id = 0

    async def __aenter__(self) -> "RpcSource":
        await self.open()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def open(self) -> None:
        if self.session is None:
            self.session = aiohttp.ClientSession(
                connector=ssl_connector(),
                timeout=aiohttp.ClientTimeout(total=self.timeout))

    async def close(self) -> None:
        if self.session is not None:
            await self.session.close()
            self.session = None

    # -------------- transport --------------
    async def _call(self, method: str, params: List) -> Any:
        if self.session is None:
            await self.open()
        self._req_id += 1
        payload = {"jsonrpc": "2.0", "id": self._req_id,
                   "method": method, "params": params}
        for attempt in range(self.retries):
            try:
                async with self.session.post(self.rpc_url, json=payload) as r:
                    r.raise_for_status()
                    j = await r.json()
                if j.get("error"):
                    raise RpcError(f"{method}: {j['error'].get('message', j['error'])}")
                return j.get("result")
            except (aiohttp.ClientError, asyncio.TimeoutError, RpcError) as e:
                if attempt == self.retries - 1:
                    if isinstance(e, RpcError):
                        raise
                    raise RpcError(f"{method} failed: {e}") from e
                log.debug(f"{method} attempt {attempt + 1} failed: {e}")
                await asyncio.sleep(0.4 * 2 ** attempt)

    # -------------- chain queries --------------
    async def get_account_data(self, address: str) -> Optional[bytes]:
        res = await self._call("getAccountInfo", [
            address, {"encoding": "base64", "commitment": self.commitment}])
        value = (res or {}).get("value")
        if not value or not value.get("data"):
            return None
        return base64.b64decode(value["data"][0])

    async def get_signatures(self, address: str, limit: int = 100) -> List[SignatureInfo]:
        """Newest-first, as the node returns them."""
        res = await self._call("getSignaturesForAddress", [
            address, {"limit": limit, "commitment": self.commitment}])
        return [SignatureInfo.from_rpc(row) for row in res or []]

    async def get_transaction(self, signature: str) -> Optional[Dict]:
        return await self._call("getTransaction", [
            signature, {"encoding": "json", "commitment": self.commitment,
                        "maxSupportedTransactionVersion": 0}])

    async def get_balance(self, address: str) -> int:
        res = await self._call("getBalance", [address, {"commitment": self.commitment}])
        return int((res or {}).get("value", 0))

    async def get_token_balance(self, owner: str, mint: str) -> int:
        """Raw token amount summed over every account `owner` holds for `mint`."""
        res = await self._call("getTokenAccountsByOwner", [
            owner, {"mint": mint},
            {"encoding": "jsonParsed", "commitment": self.commitment}])
        total = 0
        for acct in (res or {}).get("value", []):
            info = acct["account"]["data"]["parsed"]["info"]
            total += int(info["tokenAmount"]["amount"])
        return total

    async def get_slot(self) -> int:
        return int(await self._call("getSlot", [{"commitment": self.commitment}]))
