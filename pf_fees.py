#!/usr/bin/env python3
"""
🎯 pf-fees – creator-fee tracker for a SINGLE Pump.fun token
• Watches the creator's BC vault, then the AMM vault once migrated
• Optional proof-of-history ledger (--history FILE)
• Standalone audit: pf-fees --verify FILE

Usage:
  pf-fees --mint <ADDRESS> [-s SYMBOL] [-H history.json] [-v]
  pf-fees --verify history.json
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
import time
from datetime import datetime, timezone
from typing import List, Optional

from dotenv import load_dotenv
from solders.pubkey import Pubkey

from pf_ledger import EventType, LedgerFormatError
from pf_rpc import DEFAULT_RPC_URL
from pf_verify import verify_file
from pf_watch import FeeWatcher, TrackingMode, WatcherCallbacks, WatcherConfig, sol

log = logging.getLogger("pf-fees")

RULE = "═" * 55
THIN = "─" * 40


# ───────── setup ─────────

def setup_logging(verbose: bool = False) -> None:
    os.makedirs("logs", exist_ok=True)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s | %(levelname)s | %(message)s",
        handlers=[
            logging.FileHandler(f"logs/fees_{time.strftime('%Y%m%d')}.log", encoding="utf-8"),
            logging.StreamHandler(sys.stdout),
        ],
    )


def default_rpc_url() -> str:
    if os.getenv("RPC_URL"):
        return os.environ["RPC_URL"]
    helius_key = os.getenv("HELIUS_KEY")
    if helius_key:
        return f"https://mainnet.helius-rpc.com/?api-key={helius_key}"
    return DEFAULT_RPC_URL


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="pf-fees",
        description="Track creator fees for a single Pump.fun token with proof-of-history")
    ap.add_argument("--mint", "-m", help="Token mint address")
    ap.add_argument("--symbol", "-s", default="TOKEN")
    ap.add_argument("--bonding-curve", "-b", help="Bonding curve address (derived if omitted)")
    ap.add_argument("--rpc", "-r", default=None, help="RPC URL (default: $RPC_URL / Helius / public mainnet)")
    ap.add_argument("--interval", "-i", type=float, default=5.0, help="Poll interval, seconds")
    ap.add_argument("--stats-interval", type=float, default=60.0, help="Stats interval, seconds")
    ap.add_argument("--history", "-H", help="Write the proof-of-history ledger to FILE")
    ap.add_argument("--mode", choices=[m.value for m in TrackingMode],
                    default=TrackingMode.TRANSACTIONS.value,
                    help="transactions: fee events from the signature feed; "
                         "balances: diff raw balances (also records claims)")
    ap.add_argument("--verify", "-V", metavar="FILE", help="Verify a ledger file and exit")
    ap.add_argument("--verbose", "-v", action="store_true")
    return ap


# ───────── verify ─────────

def verify_command(path: str) -> int:
    print("\n🔍 PROOF-OF-HISTORY VERIFICATION")
    print(RULE)
    print(f"File: {path}\n")

    try:
        result, ledger, warnings = verify_file(path)
    except LedgerFormatError as e:
        print(f"❌ Failed to load file: {e}")
        return 1

    print("📋 METADATA")
    print(THIN)
    print(f"Version:     {ledger.version}")
    print(f"Mode:        {ledger.mode}")
    print(f"Mint:        {ledger.mint}")
    print(f"Symbol:      {ledger.symbol}")
    print(f"BC:          {ledger.bonding_curve}")
    print(f"Creator:     {ledger.creator}")
    print(f"Migrated:    {'Yes' if ledger.migrated else 'No'}")
    print(f"Started:     {ledger.started_at}")
    print(f"Last Update: {ledger.last_updated}")
    print(f"Total Fees:  {sol(ledger.total_fees()):.9f} SOL")
    print(f"Entries:     {ledger.entry_count}")
    print(f"Latest Hash: {ledger.latest_hash[:16]}...\n")

    print("🔗 CHAIN VERIFICATION")
    print(THIN)
    if not result.valid:
        print(f"❌ Verification FAILED at entry {result.entry_index}")
        print(f"   Error: {result.error}\n")
        print(RULE)
        print("❌ PROOF-OF-HISTORY VERIFICATION FAILED")
        print(RULE)
        return 1

    print("✅ Sequence numbers correct")
    print("✅ Chain linkage verified")
    print("✅ All hashes valid")
    for w in warnings:
        print(f"⚠️ summary mismatch – {w}")
    print("")
    print(RULE)
    print("✅ PROOF-OF-HISTORY VERIFIED SUCCESSFULLY")
    print(RULE)

    if ledger.entries:
        print("\n📜 RECENT ENTRIES (last 5)")
        print(THIN)
        for e in ledger.entries[-5:]:
            when = datetime.fromtimestamp(e.timestamp / 1000, tz=timezone.utc).isoformat()[:19]
            icon = {EventType.FEE: "💰", EventType.CLAIM: "📤"}.get(e.event_type, "🚀")
            print(f"#{e.sequence} [{when}] {icon} {e.vault_type.value}: "
                  f"{sol(e.amount):+.6f} SOL ({e.event_type.value})")
            print(f"   Hash: {e.hash[:32]}...")
    print("")
    return 0


# ───────── run ─────────

def console_callbacks(symbol: str, history: bool) -> WatcherCallbacks:
    def on_fee(amount, vault_type, balance):
        stamp = datetime.now(timezone.utc).strftime("%H:%M:%S")
        print(f"[{stamp}] 💰 {symbol} ({vault_type.value}): +{sol(amount):.6f} SOL")

    def on_entry(entry):
        icon = "📤" if entry.event_type is EventType.CLAIM else "🔗"
        print(f"         {icon} Hash: {entry.hash[:16]}... ({entry.event_type.value} #{entry.sequence})")

    def on_migration(amm_vault):
        print("\n🚀 TOKEN MIGRATED TO AMM!")
        print(f"   AMM Vault: {amm_vault}\n")

    def on_stats(total, bc_fees, amm_fees):
        print("\n📊 STATS")
        print(THIN)
        print(f"Total: {sol(total):.6f} SOL")
        if bc_fees > 0:
            print(f"  BC:  {sol(bc_fees):.6f} SOL")
        if amm_fees > 0:
            print(f"  AMM: {sol(amm_fees):.6f} SOL")
        print(THIN + "\n")

    return WatcherCallbacks(on_fee=on_fee, on_entry=on_entry if history else None,
                            on_migration=on_migration, on_stats=on_stats)


def print_final(watcher: FeeWatcher, history: Optional[str]) -> None:
    info = watcher.token_info()
    print("\n📊 FINAL STATS")
    print("═" * 40)
    print(f"Token: {info.symbol if info else '?'}")
    print(f"Total fees tracked: {sol(watcher.total_fees()):.6f} SOL")
    if watcher.bc_fees() > 0:
        print(f"  BC:  {sol(watcher.bc_fees()):.6f} SOL")
    if watcher.amm_fees() > 0:
        print(f"  AMM: {sol(watcher.amm_fees()):.6f} SOL")
    ledger = watcher.ledger
    if ledger is not None and history:
        print("\n🔗 PROOF-OF-HISTORY")
        print(THIN)
        print(f"Entries:     {ledger.entry_count}")
        print(f"Latest hash: {ledger.latest_hash[:32]}...")
        print(f"Saved to:    {history}")
        print(f"\nVerify with: pf-fees --verify {history}")
    print("═" * 40)


async def run_watcher(args: argparse.Namespace) -> int:
    cfg = WatcherConfig(
        mint=args.mint,
        rpc_url=args.rpc or default_rpc_url(),
        symbol=args.symbol,
        bonding_curve=args.bonding_curve,
        poll_interval=args.interval,
        stats_interval=args.stats_interval,
        history_file=args.history,
        mode=TrackingMode(args.mode),
    )
    watcher = FeeWatcher(cfg, callbacks=console_callbacks(args.symbol, bool(args.history)))

    # handlers only flag the request; stop() runs once start() has returned
    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_requested.set)
        except NotImplementedError:
            # Windows: Ctrl+C arrives as KeyboardInterrupt instead
            break

    print(f"\n🎯 PF-FEES · {cfg.symbol}")
    print(RULE)
    print(f"Mint:       {cfg.mint}")
    print(f"RPC:        {cfg.rpc_url[:50]}...")
    print(f"Poll:       {cfg.poll_interval}s  ({cfg.mode.value})")
    if cfg.history_file:
        print(f"PoH:        {cfg.history_file} ✓")
    print(RULE)

    await watcher.start()
    info = watcher.token_info()
    print("\n📋 TOKEN INFO")
    print(THIN)
    print(f"BC:          {info.bonding_curve}")
    print(f"Creator:     {info.creator}")
    print(f"BC Vault:    {info.creator_vault_bc}")
    print(f"AMM Vault:   {info.creator_vault_amm}")
    print(f"Migrated:    {'Yes (AMM)' if info.migrated else 'No (Bonding Curve)'}")
    print(THIN)
    print("\n✅ Watcher running. Press Ctrl+C to stop.\n")

    try:
        await stop_requested.wait()
    finally:
        try:
            await watcher.stop()
        finally:
            print_final(watcher, cfg.history_file)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)

    if args.verify:
        return verify_command(args.verify)

    if not args.mint:
        build_parser().print_help()
        return 1
    try:
        Pubkey.from_string(args.mint)
    except ValueError:
        print("❌ Invalid mint address")
        return 1

    setup_logging(args.verbose)
    try:
        return asyncio.run(run_watcher(args))
    except KeyboardInterrupt:
        return 0
    except Exception as e:
        log.error(f"❌ fatal: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
