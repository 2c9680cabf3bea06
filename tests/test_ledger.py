"""Tests for the hash-chained fee ledger and its persistence."""

import hashlib
import json
import os
from unittest.mock import patch

import pytest

from pf_ledger import (
    GENESIS_HASH,
    EventType,
    FeeCandidate,
    FeeLedger,
    LedgerFormatError,
    VaultType,
    compute_entry_hash,
    load_ledger,
)
from pf_verify import verify_ledger


def fee(amount: int, vault_type: VaultType = VaultType.BC, signature: str = "",
        before: int = 0) -> FeeCandidate:
    return FeeCandidate(
        event_type=EventType.FEE,
        vault_type=vault_type,
        vault="Vault1111",
        amount=amount,
        balance_before=before,
        balance_after=before + amount,
        slot=250_000_000,
        timestamp=1_700_000_000_000,
        signature=signature,
    )


@pytest.fixture
def ledger(mint) -> FeeLedger:
    return FeeLedger(mint=mint, symbol="TEST")


class TestAppend:
    def test_empty_ledger_starts_at_genesis(self, ledger) -> None:
        assert ledger.latest_hash == GENESIS_HASH
        assert ledger.entry_count == 0
        assert ledger.total_fees() == 0

    @pytest.mark.parametrize("n", [1, 2, 7])
    def test_sequence_and_linkage(self, ledger, n) -> None:
        for i in range(n):
            ledger.append(fee(100 + i, signature=f"sig{i}"))
        assert [e.sequence for e in ledger.entries] == list(range(1, n + 1))
        assert ledger.entries[0].prev_hash == GENESIS_HASH
        for prev, cur in zip(ledger.entries, ledger.entries[1:]):
            assert cur.prev_hash == prev.hash
        assert ledger.latest_hash == ledger.entries[-1].hash
        assert verify_ledger(ledger).valid

    def test_hash_is_sha256_of_pipe_joined_fields(self, ledger) -> None:
        e = ledger.append(fee(500, signature="abc"))
        pre = f"1|{GENESIS_HASH}|FEE|BC|Vault1111|500|0|500|250000000|1700000000000|abc"
        assert e.hash == hashlib.sha256(pre.encode()).hexdigest()
        assert compute_entry_hash(e) == e.hash

    def test_missing_signature_uses_empty_placeholder(self, ledger) -> None:
        e = ledger.append(fee(500))
        pre = f"1|{GENESIS_HASH}|FEE|BC|Vault1111|500|0|500|250000000|1700000000000|"
        assert e.hash == hashlib.sha256(pre.encode()).hexdigest()

    def test_totals_split_by_vault_and_ignore_claims(self, ledger) -> None:
        ledger.append(fee(100, VaultType.BC))
        ledger.append(fee(40, VaultType.AMM))
        ledger.append(FeeCandidate(EventType.CLAIM, VaultType.BC, "Vault1111",
                                   -100, 100, 0, 1, 1))
        ledger.append(FeeCandidate(EventType.MIGRATE, VaultType.AMM, "Vault2222",
                                   0, 0, 0, 1, 1))
        assert ledger.bc_fees() == 100
        assert ledger.amm_fees() == 40
        assert ledger.total_fees() == 140

    def test_signatures_for_vault(self, ledger) -> None:
        ledger.append(fee(1, VaultType.BC, "a"))
        ledger.append(fee(1, VaultType.AMM, "b"))
        ledger.append(fee(1, VaultType.BC, "c"))
        ledger.append(fee(1, VaultType.BC))
        assert ledger.signatures_for(VaultType.BC) == ["a", "c"]
        assert ledger.signatures_for(VaultType.AMM) == ["b"]


class TestPersistence:
    def test_write_through_and_reload(self, tmp_path, mint) -> None:
        path = str(tmp_path / "history.json")
        ledger = FeeLedger(mint=mint, symbol="TEST", path=path)
        ledger.append(fee(10**18, signature="big"))
        ledger.append(fee(3, VaultType.AMM, "small"))

        doc = json.loads(open(path).read())
        assert doc["entryCount"] == 2
        assert doc["totalFees"] == str(10**18 + 3)
        assert doc["latestHash"] == ledger.latest_hash
        assert doc["entries"][0]["amount"] == "1000000000000000000"

        reloaded = load_ledger(path)
        assert reloaded.entries == ledger.entries
        assert verify_ledger(reloaded) == verify_ledger(ledger)

    def test_roundtrip_keeps_verdict_for_tampered_ledger(self, tmp_path, mint) -> None:
        path = str(tmp_path / "history.json")
        ledger = FeeLedger(mint=mint, path=path)
        for i in range(3):
            ledger.append(fee(10 + i))
        doc = json.loads(open(path).read())
        doc["entries"][1]["amount"] = "9999"
        with open(path, "w") as f:
            json.dump(doc, f)

        before = verify_ledger(FeeLedger.from_dict(doc))
        after = verify_ledger(load_ledger(path))
        assert before == after
        assert not after.valid and after.entry_index == 1

    def test_failed_write_rolls_back_append(self, tmp_path, mint) -> None:
        path = str(tmp_path / "history.json")
        ledger = FeeLedger(mint=mint, path=path)
        ledger.append(fee(1))
        with patch("pf_ledger.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                ledger.append(fee(2))
        assert ledger.entry_count == 1
        assert load_ledger(path).entries == ledger.entries
        assert [p for p in os.listdir(tmp_path) if p.endswith(".tmp")] == []

    def test_memory_only_ledger_does_not_touch_disk(self, tmp_path, ledger) -> None:
        ledger.append(fee(1))
        assert os.listdir(tmp_path) == []

    def test_set_migrated_persists(self, tmp_path, mint) -> None:
        path = str(tmp_path / "history.json")
        ledger = FeeLedger(mint=mint, path=path)
        ledger.set_migrated()
        assert load_ledger(path).migrated is True


class TestLoadErrors:
    def test_not_json(self, tmp_path) -> None:
        p = tmp_path / "bad.json"
        p.write_text("{nope")
        with pytest.raises(LedgerFormatError):
            load_ledger(str(p))

    def test_missing_file(self, tmp_path) -> None:
        with pytest.raises(LedgerFormatError):
            load_ledger(str(tmp_path / "absent.json"))

    def test_missing_entry_field(self, tmp_path, mint) -> None:
        path = str(tmp_path / "history.json")
        ledger = FeeLedger(mint=mint, path=path)
        ledger.append(fee(1))
        doc = json.loads(open(path).read())
        del doc["entries"][0]["prevHash"]
        with pytest.raises(LedgerFormatError, match="entry 0"):
            FeeLedger.from_dict(doc)

    @pytest.mark.parametrize("bad", ["01", "1.0", " 1", 1, "abc", "-0", "+1"])
    def test_non_canonical_amount_rejected(self, mint, bad) -> None:
        ledger = FeeLedger(mint=mint)
        ledger.append(fee(1))
        doc = ledger.to_dict()
        doc["entries"][0]["amount"] = bad
        with pytest.raises(LedgerFormatError):
            FeeLedger.from_dict(doc)

    @pytest.mark.parametrize("drop", [True, False])
    def test_signature_must_be_present_string(self, mint, drop) -> None:
        ledger = FeeLedger(mint=mint)
        ledger.append(fee(1))
        doc = ledger.to_dict()
        if drop:
            del doc["entries"][0]["signature"]
        else:
            doc["entries"][0]["signature"] = None
        with pytest.raises(LedgerFormatError, match="entry 0"):
            FeeLedger.from_dict(doc)

    def test_invalid_utf8_is_a_format_error(self, tmp_path) -> None:
        p = tmp_path / "bad.json"
        p.write_bytes(b'{"mint": "\xff\xfe"}')
        with pytest.raises(LedgerFormatError):
            load_ledger(str(p))

    def test_unknown_event_type(self, mint) -> None:
        ledger = FeeLedger(mint=mint)
        ledger.append(fee(1))
        doc = ledger.to_dict()
        doc["entries"][0]["eventType"] = "BONUS"
        with pytest.raises(LedgerFormatError):
            FeeLedger.from_dict(doc)
