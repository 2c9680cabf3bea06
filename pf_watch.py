"""
👁️ Pump.fun creator-fee watcher
• Resolves a mint's bonding curve + both creator vaults
• Every poll interval: migration check → BC vault → AMM vault (post-migration)
• Each detected fee is appended to the hash-chained ledger (write-through)
• A second timer reports running totals

One tick at a time: both vault pipelines share the ledger, so they run
sequentially under a single lock and `stop()` lets an in-flight tick finish.
"""

import asyncio
import enum
import logging
import os
import time
from collections import Counter
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, Optional

from pf_curve import amm_creator_vault_pda, creator_vault_pda, curve_pda, decode_curve
from pf_cursor import SignatureCursor
from pf_delta import (
    WSOL_MINT,
    AccountKind,
    DeltaExtractor,
    WatchedAccount,
    balance_event,
)
from pf_ledger import (
    EventType,
    FeeCandidate,
    FeeEvent,
    FeeLedger,
    LedgerFormatError,
    LedgerIntegrityError,
    VaultType,
    load_ledger,
)
from pf_rpc import DEFAULT_RPC_URL, RpcSource
from pf_verify import verify_ledger

log = logging.getLogger("fee-watch")

LAMPORTS_PER_SOL = 1_000_000_000


class CurveNotFoundError(RuntimeError):
    pass


class CurveDecodeError(RuntimeError):
    pass


class TransactionUnavailable(RuntimeError):
    """Listed signature whose transaction the node cannot serve yet."""


class TrackingMode(str, enum.Enum):
    TRANSACTIONS = "transactions"   # signature feed, FEE only
    BALANCES = "balances"           # raw balance diffs, FEE + CLAIM


class WatcherState(str, enum.Enum):
    STOPPED = "STOPPED"
    INITIALIZING = "INITIALIZING"
    RUNNING = "RUNNING"


@dataclass
class WatcherConfig:
    mint: str
    rpc_url: str = DEFAULT_RPC_URL
    symbol: str = "TOKEN"
    bonding_curve: Optional[str] = None
    poll_interval: float = 5.0          # seconds
    stats_interval: float = 60.0        # seconds
    history_file: Optional[str] = None
    mode: TrackingMode = TrackingMode.TRANSACTIONS
    signature_limit: int = 100
    max_fetch_attempts: int = 3
    quote_mint: str = WSOL_MINT


@dataclass
class WatcherCallbacks:
    on_fee: Optional[Callable[[int, VaultType, int], None]] = None
    on_entry: Optional[Callable[[FeeEvent], None]] = None
    on_migration: Optional[Callable[[str], None]] = None
    on_stats: Optional[Callable[[int, int, int], None]] = None


@dataclass(frozen=True)
class TokenInfo:
    mint: str
    symbol: str
    bonding_curve: str
    creator: str
    creator_vault_bc: str
    creator_vault_amm: str
    migrated: bool


def sol(lamports: int) -> float:
    return lamports / LAMPORTS_PER_SOL


class FeeWatcher:
    def __init__(self, config: WatcherConfig, source=None,
                 callbacks: Optional[WatcherCallbacks] = None):
        self.config = config
        self.callbacks = callbacks or WatcherCallbacks()
        self._owns_source = source is None
        self.source = source or RpcSource(config.rpc_url)
        self.state = WatcherState.STOPPED

        self.migrated = False
        self._info: Optional[TokenInfo] = None
        self._ledger: Optional[FeeLedger] = None
        self.extractor: Optional[DeltaExtractor] = None
        self.watched: Dict[VaultType, WatchedAccount] = {}
        self.cursors: Dict[VaultType, SignatureCursor] = {}
        self._last_balance: Dict[VaultType, Optional[int]] = {}
        self._misses: Counter = Counter()

        self._tick_lock = asyncio.Lock()
        self._poll_task: Optional[asyncio.Task] = None
        self._stats_task: Optional[asyncio.Task] = None
        self._stopped = asyncio.Event()

    # -------------- read-only accessors --------------
    @property
    def ledger(self) -> Optional[FeeLedger]:
        return self._ledger

    def token_info(self) -> Optional[TokenInfo]:
        if self._info is None:
            return None
        return replace(self._info, migrated=self.migrated)

    def total_fees(self) -> int:
        return self._ledger.total_fees() if self._ledger else 0

    def bc_fees(self) -> int:
        return self._ledger.bc_fees() if self._ledger else 0

    def amm_fees(self) -> int:
        return self._ledger.amm_fees() if self._ledger else 0

    def is_running(self) -> bool:
        return self.state is WatcherState.RUNNING

    # -------------- lifecycle --------------
    async def start(self, timers: bool = True) -> None:
        """STOPPED → INITIALIZING → RUNNING.

        With `timers=False` nothing is scheduled and the caller drives
        `tick()` / `report_stats()` itself.
        """
        if self.state is not WatcherState.STOPPED:
            return
        self.state = WatcherState.INITIALIZING
        log.info("▶ starting fee watcher...")
        try:
            await self._initialize()
        except BaseException:
            self.state = WatcherState.STOPPED
            if self._owns_source:
                await self.source.close()
            raise
        if self.state is not WatcherState.INITIALIZING:
            # stop() ran while we were initializing
            log.info("⏹ stop requested during startup")
            if self._owns_source:
                await self.source.close()
            return
        self.state = WatcherState.RUNNING
        self._stopped.clear()

        if timers:
            self._poll_task = asyncio.create_task(self._poll_loop())
            if self.callbacks.on_stats:
                self._stats_task = asyncio.create_task(self._stats_loop())
        log.info("✅ watcher running")

    async def stop(self) -> None:
        """Wait for any in-flight tick, cancel both timers, persist."""
        if self.state is WatcherState.STOPPED:
            return
        self.state = WatcherState.STOPPED
        tasks = [t for t in (self._poll_task, self._stats_task) if t]
        async with self._tick_lock:
            for t in tasks:
                t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._poll_task = self._stats_task = None

        try:
            if self._ledger is not None:
                self._ledger.save()
        except Exception as e:
            log.error(f"❌ final ledger save failed: {e}")
            raise
        finally:
            if self._owns_source:
                await self.source.close()
            self._stopped.set()
            log.info("⏹ watcher stopped")

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    async def _initialize(self) -> None:
        cfg = self.config
        bonding_curve = cfg.bonding_curve or curve_pda(cfg.mint)

        data = await self.source.get_account_data(bonding_curve)
        if data is None:
            raise CurveNotFoundError(f"bonding curve account not found: {bonding_curve}")
        curve = decode_curve(data)
        if curve is None:
            raise CurveDecodeError(f"cannot decode bonding curve {bonding_curve} ({len(data)} bytes)")

        creator = curve.creator
        self._info = TokenInfo(
            mint=cfg.mint,
            symbol=cfg.symbol,
            bonding_curve=bonding_curve,
            creator=creator,
            creator_vault_bc=creator_vault_pda(creator),
            creator_vault_amm=amm_creator_vault_pda(creator),
            migrated=curve.complete,
        )
        info = self._info
        log.info(f"Mint: {info.mint} ({info.symbol})")
        log.info(f"Bonding curve: {info.bonding_curve}")
        log.info(f"Creator: {info.creator}")
        log.info(f"Creator vault (BC): {info.creator_vault_bc}")
        log.info(f"Creator vault (AMM): {info.creator_vault_amm}")

        self.extractor = DeltaExtractor(cfg.mint, bonding_curve)
        self.watched = {
            VaultType.BC: WatchedAccount(info.creator_vault_bc, AccountKind.NATIVE, VaultType.BC),
            VaultType.AMM: WatchedAccount(info.creator_vault_amm, AccountKind.FUNGIBLE,
                                          VaultType.AMM, mint=cfg.quote_mint),
        }
        self._ledger = self._open_ledger(curve.complete)

        for vt in VaultType:
            sigs = self._ledger.signatures_for(vt)
            self.cursors[vt] = SignatureCursor(last_seen=sigs[-1] if sigs else None,
                                               processed=sigs)
        if cfg.mode is TrackingMode.BALANCES:
            await self._init_balances()
        else:
            await self._prime_cursors()

        if self._ledger.migrated:
            self.migrated = True
        elif curve.complete:
            await self._record_migration()
        log.info(f"Migrated: {self.migrated}")

    def _open_ledger(self, complete: bool) -> FeeLedger:
        cfg, info = self.config, self._info
        path = cfg.history_file
        if path and os.path.exists(path):
            try:
                ledger = load_ledger(path)
            except LedgerFormatError as e:
                raise LedgerIntegrityError(f"existing ledger unreadable: {e}") from e
            if ledger.mint != cfg.mint:
                raise LedgerIntegrityError(
                    f"{path} belongs to mint {ledger.mint}, not {cfg.mint}")
            result = verify_ledger(ledger)
            if not result.valid:
                raise LedgerIntegrityError(
                    f"{path} failed verification at entry {result.entry_index}: {result.error}")
            if ledger.mode != cfg.mode.value:
                log.warning(f"⚠️ ledger was recorded in {ledger.mode} mode, now running {cfg.mode.value}")
            log.info(f"📜 loaded ledger with {ledger.entry_count} entries")
            return ledger

        ledger = FeeLedger(
            mint=cfg.mint,
            symbol=cfg.symbol,
            bonding_curve=info.bonding_curve,
            creator=info.creator,
            creator_vault_bc=info.creator_vault_bc,
            creator_vault_amm=info.creator_vault_amm,
            migrated=complete,
            mode=cfg.mode.value,
            path=path,
        )
        ledger.save()
        return ledger

    async def _prime_cursors(self) -> None:
        """Take the startup listing as history, even when it is empty."""
        for vt, cursor in self.cursors.items():
            if cursor.initialized:
                continue
            try:
                infos = await self.source.get_signatures(
                    self.watched[vt].address, self.config.signature_limit)
            except Exception as e:
                # first successful listing primes it instead
                log.warning(f"⚠️ could not prime {vt.value} cursor: {e}")
                continue
            cursor.prime([i.signature for i in infos])

    async def _init_balances(self) -> None:
        for vt, watched in self.watched.items():
            last = next((e for e in reversed(self._ledger.entries)
                         if e.vault_type is vt and e.event_type is not EventType.MIGRATE), None)
            if last is not None:
                self._last_balance[vt] = last.balance_after
                continue
            try:
                self._last_balance[vt] = await self._read_balance(watched)
                log.info(f"{vt.value} vault initial: {sol(self._last_balance[vt])} SOL")
            except Exception as e:
                # baseline is taken on the first successful poll instead
                log.warning(f"⚠️ initial {vt.value} balance unavailable: {e}")
                self._last_balance[vt] = None

    # -------------- timers --------------
    async def _poll_loop(self) -> None:
        while self.state is WatcherState.RUNNING:
            await self.tick()
            await asyncio.sleep(self.config.poll_interval)

    async def _stats_loop(self) -> None:
        while self.state is WatcherState.RUNNING:
            await asyncio.sleep(self.config.stats_interval)
            self.report_stats()

    def report_stats(self) -> None:
        self._emit(self.callbacks.on_stats, self.total_fees(), self.bc_fees(), self.amm_fees())

    # -------------- tick --------------
    async def tick(self) -> bool:
        """Run one poll. Returns False when the tick was abandoned."""
        async with self._tick_lock:
            if self.state is not WatcherState.RUNNING:
                return False
            try:
                if not self.migrated:
                    await self._check_migration()
                await self._poll_vault(VaultType.BC)
                if self.migrated:
                    await self._poll_vault(VaultType.AMM)
                return True
            except Exception as e:
                log.error(f"poll error: {e!r}")
                return False

    async def _check_migration(self) -> None:
        data = await self.source.get_account_data(self._info.bonding_curve)
        curve = decode_curve(data) if data else None
        if curve is not None and curve.complete and not self.migrated:
            await self._record_migration()

    async def _record_migration(self) -> None:
        amm_vault = self._info.creator_vault_amm
        if not any(e.event_type is EventType.MIGRATE for e in self._ledger.entries):
            slot = await self.source.get_slot()
            self._record(FeeCandidate(
                event_type=EventType.MIGRATE,
                vault_type=VaultType.AMM,
                vault=amm_vault,
                amount=0,
                balance_before=0,
                balance_after=0,
                slot=slot,
                timestamp=int(time.time() * 1000),
            ))
        self._ledger.set_migrated()
        self.migrated = True
        log.info("🚀 token has migrated to AMM!")
        self._emit(self.callbacks.on_migration, amm_vault)

    async def _poll_vault(self, vt: VaultType) -> None:
        if self.config.mode is TrackingMode.BALANCES:
            await self._poll_balance(vt)
        else:
            await self._poll_signatures(vt)

    async def _poll_signatures(self, vt: VaultType) -> None:
        watched, cursor = self.watched[vt], self.cursors[vt]
        infos = await self.source.get_signatures(watched.address, self.config.signature_limit)
        failed = {i.signature for i in infos if i.err is not None}

        for sig in cursor.observe([i.signature for i in infos]):
            if sig in failed:
                continue
            tx = await self.source.get_transaction(sig)
            if tx is None:
                self._misses[sig] += 1
                if self._misses[sig] < self.config.max_fetch_attempts:
                    raise TransactionUnavailable(f"{vt.value} tx {sig[:16]}... not available yet")
                log.warning(f"⚠️ giving up on {sig[:16]}... after {self._misses[sig]} attempts")
                del self._misses[sig]
                continue
            self._misses.pop(sig, None)

            candidate = self.extractor.extract(tx, watched)
            if candidate is not None:
                self._record(candidate)

    async def _poll_balance(self, vt: VaultType) -> None:
        watched = self.watched[vt]
        slot = await self.source.get_slot()
        balance = await self._read_balance(watched)
        last = self._last_balance.get(vt)
        if last is None:
            self._last_balance[vt] = balance
            return
        candidate = balance_event(watched, last, balance, slot, int(time.time() * 1000))
        if candidate is not None:
            self._record(candidate)
        self._last_balance[vt] = balance

    async def _read_balance(self, watched: WatchedAccount) -> int:
        if watched.kind is AccountKind.NATIVE:
            return await self.source.get_balance(watched.address)
        return await self.source.get_token_balance(
            watched.address, watched.mint or self.config.quote_mint)

    # -------------- recording --------------
    def _record(self, candidate: FeeCandidate) -> FeeEvent:
        entry = self._ledger.append(candidate)
        vt = candidate.vault_type.value
        if candidate.event_type is EventType.FEE:
            log.info(f"💰 {vt}: +{sol(candidate.amount)} SOL (#{entry.sequence})")
            self._emit(self.callbacks.on_fee, candidate.amount,
                       candidate.vault_type, candidate.balance_after)
        elif candidate.event_type is EventType.CLAIM:
            log.info(f"📤 {vt}: CLAIM {sol(candidate.amount)} SOL (#{entry.sequence})")
        log.debug(f"🔗 {entry.hash[:16]}... ({entry.event_type.value} #{entry.sequence})")
        self._emit(self.callbacks.on_entry, entry)
        return entry

    def _emit(self, cb: Optional[Callable], *args) -> None:
        if cb is None:
            return
        try:
            cb(*args)
        except Exception:
            log.exception(f"callback {getattr(cb, '__name__', cb)!r} failed")
