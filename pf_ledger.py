"""
🔗 Proof-of-history fee ledger
Append-only list of fee events. Every entry commits (sha256) to its own
fields and to the previous entry's hash, so any edit breaks the chain.
The JSON file is written through on every append and is the ground truth
on reload; the summary block is recomputed from `entries` on each save.
"""

import enum
import hashlib
import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

log = logging.getLogger("fee-ledger")

LEDGER_VERSION = "1.1.0"
GENESIS_HASH = "a1b2c3d4e5f6789012345678901234567890abcdef1234567890abcdef123456"

_INT_RE = re.compile(r"0|-?[1-9][0-9]*")


class LedgerFormatError(ValueError):
    """The ledger document is unreadable or structurally invalid."""


class LedgerIntegrityError(RuntimeError):
    """An existing ledger cannot be trusted (bad chain or wrong instrument)."""


class EventType(str, enum.Enum):
    FEE = "FEE"
    CLAIM = "CLAIM"
    MIGRATE = "MIGRATE"


class VaultType(str, enum.Enum):
    BC = "BC"
    AMM = "AMM"


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ───────── entries ─────────

@dataclass(frozen=True)
class FeeCandidate:
    """An extracted event before it is sequenced and hashed."""
    event_type: EventType
    vault_type: VaultType
    vault: str
    amount: int
    balance_before: int
    balance_after: int
    slot: int
    timestamp: int                  # ms since epoch
    signature: str = ""             # empty when not transaction-sourced


@dataclass(frozen=True)
class FeeEvent:
    sequence: int
    prev_hash: str
    event_type: EventType
    vault_type: VaultType
    vault: str
    amount: int
    balance_before: int
    balance_after: int
    slot: int
    timestamp: int
    signature: str
    hash: str

    def to_dict(self) -> Dict:
        return {
            "sequence": self.sequence,
            "prevHash": self.prev_hash,
            "eventType": self.event_type.value,
            "vaultType": self.vault_type.value,
            "vault": self.vault,
            "amount": str(self.amount),
            "balanceBefore": str(self.balance_before),
            "balanceAfter": str(self.balance_after),
            "slot": self.slot,
            "timestamp": self.timestamp,
            "signature": self.signature,
            "hash": self.hash,
        }

    @classmethod
    def from_dict(cls, d: Dict) -> "FeeEvent":
        return cls(
            sequence=_as_int(d["sequence"], "sequence"),
            prev_hash=_as_str(d["prevHash"], "prevHash"),
            event_type=EventType(d["eventType"]),
            vault_type=VaultType(d["vaultType"]),
            vault=_as_str(d["vault"], "vault"),
            amount=_as_decimal(d["amount"], "amount"),
            balance_before=_as_decimal(d["balanceBefore"], "balanceBefore"),
            balance_after=_as_decimal(d["balanceAfter"], "balanceAfter"),
            slot=_as_int(d["slot"], "slot"),
            timestamp=_as_int(d["timestamp"], "timestamp"),
            signature=_as_str(d["signature"], "signature"),
            hash=_as_str(d["hash"], "hash"),
        )


def _as_int(v, name: str) -> int:
    if isinstance(v, bool) or not isinstance(v, int):
        raise ValueError(f"{name} must be an integer, got {v!r}")
    return v


def _as_str(v, name: str) -> str:
    if not isinstance(v, str):
        raise ValueError(f"{name} must be a string, got {v!r}")
    return v


def _as_decimal(v, name: str) -> int:
    # amounts are stored as canonical decimal strings; anything else would
    # let two different documents share one commitment
    if not isinstance(v, str) or not _INT_RE.fullmatch(v):
        raise ValueError(f"{name} must be a canonical integer string, got {v!r}")
    return int(v)


def entry_preimage(sequence: int, prev_hash: str, event_type: EventType,
                   vault_type: VaultType, vault: str, amount: int,
                   balance_before: int, balance_after: int, slot: int,
                   timestamp: int, signature: str) -> str:
    return "|".join([
        str(sequence),
        prev_hash,
        EventType(event_type).value,
        VaultType(vault_type).value,
        vault,
        str(amount),
        str(balance_before),
        str(balance_after),
        str(slot),
        str(timestamp),
        signature or "",
    ])


def compute_entry_hash(entry) -> str:
    """sha256 over every field of `entry` except `hash`, in fixed order."""
    data = entry_preimage(
        entry.sequence, entry.prev_hash, entry.event_type, entry.vault_type,
        entry.vault, entry.amount, entry.balance_before, entry.balance_after,
        entry.slot, entry.timestamp, entry.signature)
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


# ───────── ledger ─────────

class FeeLedger:
    def __init__(self, mint: str, symbol: str = "TOKEN", bonding_curve: str = "",
                 creator: str = "", creator_vault_bc: str = "",
                 creator_vault_amm: str = "", migrated: bool = False,
                 mode: str = "transactions", path: Optional[str] = None,
                 started_at: Optional[str] = None, last_updated: Optional[str] = None,
                 entries: Optional[Iterable[FeeEvent]] = None,
                 version: str = LEDGER_VERSION):
        self.version = version
        self.mode = mode
        self.mint = mint
        self.symbol = symbol
        self.bonding_curve = bonding_curve
        self.creator = creator
        self.creator_vault_bc = creator_vault_bc
        self.creator_vault_amm = creator_vault_amm
        self.migrated = migrated
        self.path = path
        self.started_at = started_at or now_iso()
        self.last_updated = last_updated or self.started_at
        self.entries: List[FeeEvent] = list(entries or [])

    # -------------- derived summary --------------
    @property
    def entry_count(self) -> int:
        return len(self.entries)

    @property
    def latest_hash(self) -> str:
        return self.entries[-1].hash if self.entries else GENESIS_HASH

    def _fees(self, vault_type: Optional[VaultType] = None) -> int:
        return sum(e.amount for e in self.entries
                   if e.event_type is EventType.FEE
                   and (vault_type is None or e.vault_type is vault_type))

    def total_fees(self) -> int:
        return self._fees()

    def bc_fees(self) -> int:
        return self._fees(VaultType.BC)

    def amm_fees(self) -> int:
        return self._fees(VaultType.AMM)

    def signatures_for(self, vault_type: VaultType) -> List[str]:
        """Source signatures recorded for one vault, oldest first."""
        return [e.signature for e in self.entries
                if e.vault_type is vault_type and e.signature]

    # -------------- mutation --------------
    def append(self, candidate: FeeCandidate) -> FeeEvent:
        """Sequence, chain and hash `candidate`, then write through.

        If the write fails the entry is dropped again, so memory never runs
        ahead of the file.
        """
        entry = FeeEvent(
            sequence=len(self.entries) + 1,
            prev_hash=self.latest_hash,
            event_type=EventType(candidate.event_type),
            vault_type=VaultType(candidate.vault_type),
            vault=candidate.vault,
            amount=candidate.amount,
            balance_before=candidate.balance_before,
            balance_after=candidate.balance_after,
            slot=candidate.slot,
            timestamp=candidate.timestamp,
            signature=candidate.signature or "",
            hash="",
        )
        entry = replace(entry, hash=compute_entry_hash(entry))
        self.entries.append(entry)
        try:
            self.save()
        except Exception:
            self.entries.pop()
            raise
        return entry

    def set_migrated(self) -> None:
        if self.migrated:
            return
        self.migrated = True
        try:
            self.save()
        except Exception:
            self.migrated = False
            raise

    # -------------- persistence --------------
    def to_dict(self) -> Dict:
        return {
            "version": self.version,
            "mode": self.mode,
            "mint": self.mint,
            "symbol": self.symbol,
            "bondingCurve": self.bonding_curve,
            "creator": self.creator,
            "creatorVaultBC": self.creator_vault_bc,
            "creatorVaultAMM": self.creator_vault_amm,
            "migrated": self.migrated,
            "startedAt": self.started_at,
            "lastUpdated": self.last_updated,
            "totalFees": str(self.total_fees()),
            "entryCount": self.entry_count,
            "latestHash": self.latest_hash,
            "entries": [e.to_dict() for e in self.entries],
        }

    @classmethod
    def from_dict(cls, doc: Dict, path: Optional[str] = None) -> "FeeLedger":
        if not isinstance(doc, dict):
            raise LedgerFormatError("ledger document must be a JSON object")
        raw_entries = doc.get("entries", [])
        if not isinstance(raw_entries, list):
            raise LedgerFormatError("'entries' must be a list")
        entries = []
        for i, raw in enumerate(raw_entries):
            try:
                entries.append(FeeEvent.from_dict(raw))
            except (KeyError, TypeError, ValueError) as e:
                raise LedgerFormatError(f"entry {i} is malformed: {e}") from e
        try:
            return cls(
                mint=_as_str(doc["mint"], "mint"),
                symbol=doc.get("symbol", "TOKEN"),
                bonding_curve=doc.get("bondingCurve", ""),
                creator=doc.get("creator", ""),
                creator_vault_bc=doc.get("creatorVaultBC", ""),
                creator_vault_amm=doc.get("creatorVaultAMM", ""),
                migrated=bool(doc.get("migrated", False)),
                mode=doc.get("mode", "transactions"),
                path=path,
                started_at=doc.get("startedAt"),
                last_updated=doc.get("lastUpdated"),
                entries=entries,
                version=doc.get("version", LEDGER_VERSION),
            )
        except (KeyError, ValueError) as e:
            raise LedgerFormatError(f"ledger header is malformed: {e}") from e

    def save(self) -> None:
        if not self.path:
            return
        self.last_updated = now_iso()
        body = json.dumps(self.to_dict(), indent=2)
        dirpath = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(dirpath, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".ledger-", suffix=".tmp", dir=dirpath)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(body)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        log.debug(f"💾 ledger saved ({self.entry_count} entries) → {self.path}")


def read_ledger_doc(path: str) -> Dict:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        raise LedgerFormatError(f"cannot read ledger {path}: {e}") from e


def load_ledger(path: str) -> FeeLedger:
    return FeeLedger.from_dict(read_ledger_doc(path), path=path)
