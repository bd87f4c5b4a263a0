import enum
import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    Float,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
    Index
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Timestamped, SmallestUnit
from shared.crypto.tokens import TokenType
from shared.currency_precision import AmountConverter


def _values(enum_cls):
    return [e.value for e in enum_cls]


class DepositStatus(enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    REVERTED = "reverted"


class SweepStatus(enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class GasSupplyType(enum.Enum):
    AUTO = "AUTO"
    MANUAL = "MANUAL"


class GasSupplyStatus(enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


class GasTriggerType(enum.Enum):
    CRITICAL_BALANCE = "CRITICAL_BALANCE"
    SCHEDULED = "SCHEDULED"
    MANUAL_REQUEST = "MANUAL_REQUEST"
    AUTO_RETRY = "AUTO_RETRY"


class Deposit(Timestamped):
    """
    A transfer into a user wallet, observed on chain.

    One row per (tx_hash, asset_key): a single transaction can carry a native
    value and token Transfer events, each recorded separately. Rows are never
    deleted; reorged or failed transfers are kept with their final status.
    """
    __tablename__ = "deposits"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False, index=True)
    from_address: Mapped[str] = mapped_column(String(42), nullable=False)
    to_address: Mapped[str] = mapped_column(String(42), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(SmallestUnit, nullable=False)
    decimals: Mapped[int] = mapped_column(Integer, nullable=False, default=18)
    token_type: Mapped[TokenType] = mapped_column(
        Enum(TokenType, values_callable=_values), nullable=False, default=TokenType.NATIVE)
    token_contract: Mapped[str | None] = mapped_column(String(42), nullable=True)
    token_symbol: Mapped[str] = mapped_column(String(16), nullable=False)
    asset_key: Mapped[str] = mapped_column(String(42), nullable=False)
    block_number: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    confirmations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[DepositStatus] = mapped_column(
        Enum(DepositStatus, values_callable=_values), nullable=False, default=DepositStatus.PENDING, index=True)
    confirmed_at: Mapped[datetime.datetime | None] = mapped_column(DateTime, nullable=True)

    swept: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    swept_at: Mapped[datetime.datetime | None] = mapped_column(DateTime, nullable=True)
    sweep_tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)

    processing_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_processing_at: Mapped[datetime.datetime | None] = mapped_column(DateTime, nullable=True)
    last_processing_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    flagged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    flag_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("tx_hash", "asset_key", name="uq_deposit_tx_asset"),
        Index("ix_deposits_user_asset_swept", "user_id", "asset_key", "swept"),
    )

    @property
    def amount_display(self) -> Decimal:
        return AmountConverter.from_smallest_units(self.amount, self.decimals)

    @property
    def age_in_minutes(self) -> int:
        return int((datetime.datetime.utcnow() - self.created_at).total_seconds() // 60)

    def update_confirmations(self, confirmations: int, threshold: int) -> bool:
        """Record a fresh confirmation count. Returns True when the deposit just became confirmed."""
        self.confirmations = max(confirmations, 0)
        if self.status == DepositStatus.PENDING and self.confirmations >= threshold:
            self.mark_as_confirmed()
            return True
        return False

    def mark_as_confirmed(self):
        self.status = DepositStatus.CONFIRMED
        self.confirmed_at = datetime.datetime.utcnow()

    def mark_as_failed(self, reason: str = None):
        self.status = DepositStatus.FAILED
        if reason:
            self.last_processing_error = reason

    def mark_as_reverted(self):
        self.status = DepositStatus.REVERTED
        self.confirmations = 0

    def needs_sweep(self, threshold: int) -> bool:
        return (
            not self.swept
            and self.status == DepositStatus.CONFIRMED
            and self.confirmations >= threshold
        )

    def mark_as_swept(self, sweep_tx_hash: str, threshold: int) -> bool:
        """Flip ``swept`` once. Returns False if it was already swept."""
        if self.swept:
            return False
        if not self.needs_sweep(threshold):
            raise ValueError(
                f"Deposit {self.id} is {self.status.value} with {self.confirmations} confirmations; "
                f"cannot mark swept"
            )
        self.swept = True
        self.swept_at = datetime.datetime.utcnow()
        self.sweep_tx_hash = sweep_tx_hash
        return True

    def add_processing_attempt(self, error: str = None):
        self.processing_attempts = (self.processing_attempts or 0) + 1
        self.last_processing_at = datetime.datetime.utcnow()
        if error:
            self.last_processing_error = error

    def flag(self, reason: str):
        self.flagged = True
        self.flag_reason = reason

    def __repr__(self):
        return f"<Deposit {self.id}: {self.tx_hash} {self.asset_key} {self.status.value}>"


class Sweep(Timestamped):
    """A consolidation transfer from a user wallet to the master wallet. Failed sweeps are retried as new rows."""
    __tablename__ = "sweeps"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    from_address: Mapped[str] = mapped_column(String(42), nullable=False, index=True)
    to_address: Mapped[str] = mapped_column(String(42), nullable=False)
    amount: Mapped[int] = mapped_column(SmallestUnit, nullable=False)
    decimals: Mapped[int] = mapped_column(Integer, nullable=False, default=18)
    token_type: Mapped[TokenType] = mapped_column(
        Enum(TokenType, values_callable=_values), nullable=False, default=TokenType.NATIVE)
    token_contract: Mapped[str | None] = mapped_column(String(42), nullable=True)
    token_symbol: Mapped[str] = mapped_column(String(16), nullable=False)
    asset_key: Mapped[str] = mapped_column(String(42), nullable=False)
    tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True, unique=True)
    nonce: Mapped[int | None] = mapped_column(Integer, nullable=True)
    gas_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    gas_used: Mapped[int | None] = mapped_column(Integer, nullable=True)
    gas_price: Mapped[int | None] = mapped_column(SmallestUnit, nullable=True)
    gas_cost: Mapped[int | None] = mapped_column(SmallestUnit, nullable=True)
    status: Mapped[SweepStatus] = mapped_column(
        Enum(SweepStatus, values_callable=_values), nullable=False, default=SweepStatus.PENDING, index=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    related_deposits: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    block_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    sweep_efficiency: Mapped[float | None] = mapped_column(Float, nullable=True)
    completed_at: Mapped[datetime.datetime | None] = mapped_column(DateTime, nullable=True)
    flagged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    flag_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_sweeps_user_asset_created", "user_id", "asset_key", "created_at"),
    )

    @property
    def amount_display(self) -> Decimal:
        return AmountConverter.from_smallest_units(self.amount, self.decimals)

    def mark_as_processing(self, tx_hash: str, nonce: int = None):
        self.status = SweepStatus.PROCESSING
        self.tx_hash = tx_hash
        self.nonce = nonce

    def mark_as_completed(self, receipt: dict):
        self.status = SweepStatus.COMPLETED
        self.completed_at = datetime.datetime.utcnow()
        self.block_number = receipt.get("block_number")
        self.gas_used = receipt.get("gas_used")
        if receipt.get("effective_gas_price"):
            self.gas_price = receipt["effective_gas_price"]
        if self.gas_used and self.gas_price:
            self.gas_cost = self.gas_used * self.gas_price
        # Only meaningful when amount and gas are in the same currency
        if self.token_type == TokenType.NATIVE and self.amount:
            self.sweep_efficiency = self.amount / (self.amount + (self.gas_cost or 0))

    def mark_as_failed(self, error: str):
        self.status = SweepStatus.FAILED
        self.error = error

    def link_deposits(self, deposit_ids: List[int]):
        # Reassign so the JSON column is flagged dirty
        self.related_deposits = sorted(set(self.related_deposits or []) | set(deposit_ids))

    def flag(self, reason: str):
        self.flagged = True
        self.flag_reason = reason

    def __repr__(self):
        return f"<Sweep {self.id}: {self.from_address} -> {self.to_address} {self.status.value}>"


class GasSupplyLog(Timestamped):
    """Native currency sent from the master wallet to a user wallet to pay for sweeps"""
    __tablename__ = "gas_supply_logs"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wallet_address: Mapped[str] = mapped_column(String(42), nullable=False, index=True)
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    amount: Mapped[int] = mapped_column(SmallestUnit, nullable=False)
    supply_type: Mapped[GasSupplyType] = mapped_column(
        Enum(GasSupplyType, values_callable=_values), nullable=False, default=GasSupplyType.AUTO)
    tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True, unique=True)
    status: Mapped[GasSupplyStatus] = mapped_column(
        Enum(GasSupplyStatus, values_callable=_values), nullable=False, default=GasSupplyStatus.PENDING, index=True)
    block_number: Mapped[int | None] = mapped_column(Integer, nullable=True)

    admin_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    admin_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    admin_ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)

    gas_used: Mapped[int | None] = mapped_column(Integer, nullable=True)
    gas_price: Mapped[int | None] = mapped_column(SmallestUnit, nullable=True)
    gas_cost: Mapped[int | None] = mapped_column(SmallestUnit, nullable=True)
    balance_before: Mapped[int | None] = mapped_column(SmallestUnit, nullable=True)
    balance_after: Mapped[int | None] = mapped_column(SmallestUnit, nullable=True)

    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    trigger_type: Mapped[GasTriggerType] = mapped_column(
        Enum(GasTriggerType, values_callable=_values), nullable=False, default=GasTriggerType.CRITICAL_BALANCE)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    confirmed_at: Mapped[datetime.datetime | None] = mapped_column(DateTime, nullable=True)

    @property
    def amount_display(self) -> Decimal:
        return AmountConverter.from_smallest_units(self.amount)

    @property
    def balance_change(self) -> Optional[int]:
        if self.balance_before is None or self.balance_after is None:
            return None
        return self.balance_after - self.balance_before

    def mark_as_confirmed(self, receipt: dict, balance_after: int = None):
        self.status = GasSupplyStatus.CONFIRMED
        self.confirmed_at = datetime.datetime.utcnow()
        self.block_number = receipt.get("block_number")
        self.gas_used = receipt.get("gas_used")
        if receipt.get("effective_gas_price"):
            self.gas_price = receipt["effective_gas_price"]
        if self.gas_used and self.gas_price:
            self.gas_cost = self.gas_used * self.gas_price
        if balance_after is not None:
            self.balance_after = balance_after

    def mark_as_failed(self, error: str):
        self.status = GasSupplyStatus.FAILED
        self.error = error

    def __repr__(self):
        return f"<GasSupplyLog {self.id}: {self.wallet_address} {self.supply_type.value} {self.status.value}>"


class ScanCursor(Timestamped):
    """Last block a scanner finished, so a restart resumes where it stopped"""
    __tablename__ = "scan_cursors"
    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    block_number: Mapped[int] = mapped_column(Integer, nullable=False)

    def __repr__(self):
        return f"<ScanCursor {self.name}: {self.block_number}>"
