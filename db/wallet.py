import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Timestamped, SmallestUnit
from shared.currency_precision import AmountConverter


class UserWallet(Timestamped):
    """Deterministic deposit wallet of one user. Created once, never re-derived."""
    __tablename__ = "user_wallets"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    # Always stored lower-case
    address: Mapped[str] = mapped_column(String(42), nullable=False, unique=True, index=True)
    public_key: Mapped[str] = mapped_column(String(130), nullable=False)
    encrypted_private_key: Mapped[str] = mapped_column(Text, nullable=False)
    derivation_path: Mapped[str] = mapped_column(String(128), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    native_balance: Mapped[int | None] = mapped_column(SmallestUnit, nullable=True)
    balance_checked_at: Mapped[datetime.datetime | None] = mapped_column(DateTime, nullable=True)

    def update_balance(self, balance: int):
        self.native_balance = balance
        self.balance_checked_at = datetime.datetime.utcnow()

    @property
    def native_balance_display(self) -> Decimal:
        return AmountConverter.from_smallest_units(self.native_balance or 0)

    def __repr__(self):
        return f"<UserWallet {self.user_id}: {self.address}>"
