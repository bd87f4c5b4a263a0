#!/usr/bin/env python3
"""
Deposit sweeper service entry point.

Wires configuration, database, keys, RPC client and the engines together,
then runs the chain observer and the incident retry loop until SIGINT or
SIGTERM.
"""

import signal
import sys
import threading
import traceback
from typing import List

from db.connection import init_db, make_engine, make_session_factory
from chain_monitor.dedup_cache import DedupCache
from chain_monitor.deposit_observer import ChainObserver
from shared.crypto.HD import KeyDerivation
from shared.crypto.clients.evm_base_client import EVMConfig, EVMRpcClient
from shared.crypto.encryption import PrivateKeyCipher
from shared.crypto.tokens import FungibleToken, NativeToken
from shared.exceptions import ConfigurationError, ErrorType, SweeperError
from shared.logger import setup_logging
from shared.settings import SweeperSettings
from wallet.crypto_sweeper_service import SweepEngine
from wallet.gas_topup_service import GasTopUpEngine
from wallet.incident_service import IncidentService, RetryScheduler
from wallet.tx_submitter import TransactionSubmitter

logger = setup_logging("deposit_sweeper")


def build_tokens(settings: SweeperSettings, client=None) -> List:
    tokens = [NativeToken(symbol=settings.native_symbol)]
    for token in settings.token_contracts:
        decimals = token.decimals
        if decimals is None:
            if client is None:
                raise ConfigurationError(f"{token.symbol} has no decimals configured")
            on_chain = FungibleToken.load(client, token.address)
            logger.info(f"🪙 {token.symbol} ({on_chain.symbol} on chain) uses {on_chain.decimals} decimals")
            decimals = on_chain.decimals
        tokens.append(FungibleToken(contract=token.address, symbol=token.symbol, decimals=decimals))
    return tokens


class DepositSweeperService:
    """Owns every long-running component of the sweeper"""

    def __init__(self, settings: SweeperSettings, database_url: str = None):
        self.settings = settings
        self.stop_event = threading.Event()

        engine = make_engine(database_url)
        init_db(engine)
        self.session_factory = make_session_factory(engine)

        key_derivation = KeyDerivation(
            settings.master_seed_phrase,
            PrivateKeyCipher(settings.app_secret),
            passphrase=settings.master_seed_passphrase,
        )
        # No master wallet, no service
        self.master_wallet = key_derivation.master_wallet()
        logger.info(f"🔑 Master wallet {self.master_wallet.address}")

        self.client = EVMRpcClient(EVMConfig.from_settings(settings), logger=logger)
        submitter = TransactionSubmitter(self.client, settings.chain_id, stale_after=settings.receipt_timeout)
        tokens = build_tokens(settings, self.client)

        self.incidents = IncidentService(self.session_factory, max_retries=settings.max_retries)
        self.gas_engine = GasTopUpEngine(
            self.session_factory, self.client, submitter, self.master_wallet, settings,
            incidents=self.incidents,
        )
        self.sweep_engine = SweepEngine(
            self.session_factory, self.client, submitter, key_derivation, self.master_wallet, settings,
            tokens=tokens, gas_engine=self.gas_engine, incidents=self.incidents,
        )
        self.observer = ChainObserver(
            self.session_factory, self.client, settings, self.sweep_engine, tokens,
            incidents=self.incidents,
            dedup_cache=DedupCache(settings.dedup_cache_size),
            stop_event=self.stop_event,
        )

        self.retry_scheduler = RetryScheduler(
            self.session_factory, interval=settings.retry_scan_interval, stop_event=self.stop_event,
        )
        self.retry_scheduler.register(ErrorType.RPC_ERROR, self.observer.retry_incident)
        self.retry_scheduler.register(ErrorType.SWEEP_FAIL, self.sweep_engine.retry_incident)
        self.retry_scheduler.register(ErrorType.GAS_FAIL, self.gas_engine.retry_incident)

    def start(self):
        logger.info("🚀 Starting deposit sweeper")
        if not self.client.test_connection():
            logger.warning(f"⚠️ RPC endpoint {self.settings.rpc_url} unreachable, will keep polling")
        self.observer.start()
        self.retry_scheduler.start()
        logger.info("✅ Deposit sweeper started")
        logger.info(f"   - {len(self.observer.tokens)} asset(s): "
                    f"{', '.join(token.symbol for token in self.observer.tokens.values())}")
        logger.info(f"   - {self.settings.confirmation_threshold} confirmations before sweeping")
        logger.info(f"   - Backup scan every {self.settings.backup_scan_interval}s")

    def stop(self):
        logger.info("🛑 Stopping deposit sweeper")
        self.observer.stop()
        self.retry_scheduler.join(self.settings.rpc_timeout + 5)
        self.session_factory.remove()
        logger.info("✅ Deposit sweeper stopped")

    def run_forever(self):
        self.start()
        while not self.stop_event.wait(1):
            pass
        self.stop()


def main() -> int:
    try:
        settings = SweeperSettings.from_env()
        service = DepositSweeperService(settings)
    except SweeperError as e:
        logger.error(f"❌ Cannot start deposit sweeper: {e}")
        return 1

    def _shutdown(signum, frame):
        logger.info(f"🛑 Received signal {signum}")
        service.stop_event.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    try:
        service.run_forever()
    except Exception as e:
        logger.error(f"❌ Error in deposit sweeper: {e}")
        logger.error(traceback.format_exc())
        service.stop()
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
