"""
🔍 Offline ledger verifier
Replays a fee ledger from genesis and stops at the first entry whose
sequence, linkage or commitment does not check out. Needs no RPC access:
an auditor only needs the JSON file.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from pf_ledger import (
    GENESIS_HASH,
    FeeLedger,
    compute_entry_hash,
    read_ledger_doc,
)

SEQUENCE_ERROR = "sequence gap or reorder"
LINKAGE_ERROR = "broken chain linkage"
COMMITMENT_ERROR = "content does not match commitment - possible tampering"


@dataclass(frozen=True)
class VerifyResult:
    valid: bool
    entry_index: Optional[int] = None
    error: Optional[str] = None


def verify_ledger(ledger: FeeLedger) -> VerifyResult:
    expected_prev = GENESIS_HASH
    for i, entry in enumerate(ledger.entries):
        if entry.sequence != i + 1:
            return VerifyResult(False, i, f"{SEQUENCE_ERROR}: expected {i + 1}, got {entry.sequence}")
        if entry.prev_hash != expected_prev:
            return VerifyResult(False, i, LINKAGE_ERROR)
        if compute_entry_hash(entry) != entry.hash:
            return VerifyResult(False, i, COMMITMENT_ERROR)
        expected_prev = entry.hash
    return VerifyResult(True)


def summary_mismatches(doc: Dict, ledger: FeeLedger) -> List[str]:
    """Compare the persisted summary block against what the entries imply.

    The summary is a convenience copy, so a mismatch is a warning only.
    """
    expected = {
        "entryCount": ledger.entry_count,
        "latestHash": ledger.latest_hash,
        "totalFees": str(ledger.total_fees()),
    }
    out = []
    for key, want in expected.items():
        got = doc.get(key)
        if got != want:
            out.append(f"{key}: file says {got!r}, entries give {want!r}")
    return out


def verify_file(path: str) -> Tuple[VerifyResult, FeeLedger, List[str]]:
    """Audit entry point: load `path`, verify the chain, check the summary.

    Raises LedgerFormatError when the file cannot be parsed at all.
    """
    doc = read_ledger_doc(path)
    ledger = FeeLedger.from_dict(doc, path=path)
    return verify_ledger(ledger), ledger, summary_mismatches(doc, ledger)
