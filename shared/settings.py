import json
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional

from decouple import config

from shared.currency_precision import AmountConverter
from shared.exceptions import ConfigurationError


@dataclass
class TokenContractConfig:
    symbol: str
    address: str
    # None: read from the contract at startup
    decimals: Optional[int] = None


@dataclass
class SweeperSettings:
    """Runtime configuration for the deposit / sweep service"""
    rpc_url: str
    master_seed_phrase: str
    app_secret: str
    master_seed_passphrase: str = ""
    chain_id: int = 56
    native_symbol: str = "BNB"
    token_contracts: List[TokenContractConfig] = field(default_factory=list)
    confirmation_threshold: int = 6
    min_gas_balance_wei: int = AmountConverter.to_smallest_units(Decimal("0.0003"))
    gas_topup_amount_wei: int = AmountConverter.to_smallest_units(Decimal("0.0005"))
    min_native_sweep_wei: int = AmountConverter.to_smallest_units(Decimal("0.001"))
    min_token_sweep_units: Decimal = Decimal("1")
    max_retries: int = 3
    sweep_cooldown_seconds: int = 600
    backup_scan_interval: int = 30
    block_poll_interval: float = 3.0
    retry_scan_interval: int = 15
    max_blocks_per_poll: int = 50
    rpc_timeout: int = 30
    receipt_timeout: int = 120
    dedup_cache_size: int = 1000
    sweep_workers: int = 4

    @classmethod
    def from_env(cls) -> 'SweeperSettings':
        settings = cls(
            rpc_url=config("BSC_RPC_URL", default="https://bsc-dataseed1.binance.org/"),
            master_seed_phrase=config("MASTER_SEED_PHRASE", default=""),
            master_seed_passphrase=config("MASTER_SEED_PASSPHRASE", default=""),
            app_secret=config("APP_SECRET", default=""),
            chain_id=config("CHAIN_ID", default=56, cast=int),
            native_symbol=config("NATIVE_SYMBOL", default="BNB"),
            token_contracts=parse_token_contracts(config("TOKEN_CONTRACTS", default="{}")),
            confirmation_threshold=config("CONFIRMATION_THRESHOLD", default=6, cast=int),
            min_gas_balance_wei=AmountConverter.to_smallest_units(
                config("MIN_GAS_BALANCE", default="0.0003", cast=Decimal)),
            gas_topup_amount_wei=AmountConverter.to_smallest_units(
                config("GAS_TOPUP_AMOUNT", default="0.0005", cast=Decimal)),
            min_native_sweep_wei=AmountConverter.to_smallest_units(
                config("MIN_NATIVE_SWEEP", default="0.001", cast=Decimal)),
            min_token_sweep_units=config("MIN_TOKEN_SWEEP", default="1", cast=Decimal),
            max_retries=config("MAX_RETRIES", default=3, cast=int),
            sweep_cooldown_seconds=config("SWEEP_COOLDOWN_SECONDS", default=600, cast=int),
            backup_scan_interval=config("BACKUP_SCAN_INTERVAL", default=30, cast=int),
            block_poll_interval=config("BLOCK_POLL_INTERVAL", default=3.0, cast=float),
            retry_scan_interval=config("RETRY_SCAN_INTERVAL", default=15, cast=int),
            max_blocks_per_poll=config("MAX_BLOCKS_PER_POLL", default=50, cast=int),
            rpc_timeout=config("RPC_TIMEOUT", default=30, cast=int),
            receipt_timeout=config("RECEIPT_TIMEOUT", default=120, cast=int),
            dedup_cache_size=config("DEDUP_CACHE_SIZE", default=1000, cast=int),
            sweep_workers=config("SWEEP_WORKERS", default=4, cast=int),
        )
        settings.validate()
        return settings

    def validate(self):
        if not self.rpc_url:
            raise ConfigurationError("BSC_RPC_URL is required")
        if not self.master_seed_phrase:
            raise ConfigurationError("MASTER_SEED_PHRASE is required")
        if not self.app_secret:
            raise ConfigurationError("APP_SECRET is required to encrypt wallet keys")
        if self.confirmation_threshold < 1:
            raise ConfigurationError("CONFIRMATION_THRESHOLD must be at least 1")
        if self.max_retries < 1:
            raise ConfigurationError("MAX_RETRIES must be at least 1")
        if self.gas_topup_amount_wei <= 0 or self.min_gas_balance_wei <= 0:
            raise ConfigurationError("Gas thresholds must be positive")
        if self.dedup_cache_size < 1:
            raise ConfigurationError("DEDUP_CACHE_SIZE must be at least 1")
        for token in self.token_contracts:
            address = token.address
            if not address.startswith("0x") or len(address) != 42:
                raise ConfigurationError(f"Invalid token contract for {token.symbol}: {address}")


def parse_token_contracts(raw: str) -> List[TokenContractConfig]:
    """
    Parse TOKEN_CONTRACTS, e.g. {"USDT": {"address": "0x55d3...", "decimals": 18}}.
    Without "decimals" the value is read from the contract.
    """
    try:
        contracts: Dict[str, dict] = json.loads(raw or "{}")
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"TOKEN_CONTRACTS is not valid JSON: {e}")

    tokens = []
    for symbol, token_info in contracts.items():
        address = (token_info.get("address") or "").lower()
        if not address:
            raise ConfigurationError(f"TOKEN_CONTRACTS entry {symbol} has no address")
        tokens.append(TokenContractConfig(
            symbol=symbol,
            address=address,
            decimals=int(token_info["decimals"]) if token_info.get("decimals") is not None else None,
        ))
    return tokens
