"""
LedgerStore: all reads and writes of the four ledgers.

Callers own the session and the transaction boundary; the store only flushes
where a generated id or a uniqueness check is needed.
"""

import datetime
from collections import defaultdict
from typing import Dict, List, Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from db.wallet import UserWallet
from db.ledger import (
    Deposit,
    DepositStatus,
    GasSupplyLog,
    GasSupplyStatus,
    GasSupplyType,
    ScanCursor,
    Sweep,
    SweepStatus,
)
from db.incidents import (
    EntityType,
    IncidentStatus,
    Severity,
    SystemIncident,
)
from shared.exceptions import ErrorType
from shared.logger import setup_logging

logger = setup_logging(__name__)


def _since(hours: float = 0, seconds: float = 0) -> datetime.datetime:
    return datetime.datetime.utcnow() - datetime.timedelta(hours=hours, seconds=seconds)


def _avg(values: List[int]) -> float:
    return sum(values) / len(values) if values else 0


class LedgerStore:

    def __init__(self, session: Session):
        self.session = session

    # ===== Wallets =====

    def get_wallet_by_user(self, user_id) -> Optional[UserWallet]:
        return self.session.execute(
            select(UserWallet).where(UserWallet.user_id == str(user_id))
        ).scalar_one_or_none()

    def get_wallet_by_address(self, address: str) -> Optional[UserWallet]:
        return self.session.execute(
            select(UserWallet).where(UserWallet.address == address.lower())
        ).scalar_one_or_none()

    def add_wallet(self, derived) -> UserWallet:
        """Persist a derived wallet; a concurrent insert for the same user wins and is returned"""
        wallet = UserWallet(
            user_id=derived.user_id,
            address=derived.address.lower(),
            public_key=derived.public_key,
            encrypted_private_key=derived.encrypted_private_key,
            derivation_path=derived.derivation_path,
            is_active=True,
        )
        try:
            with self.session.begin_nested():
                self.session.add(wallet)
        except IntegrityError:
            logger.info(f"Wallet for user {derived.user_id} was created concurrently")
            return self.get_wallet_by_user(derived.user_id)
        return wallet

    def active_wallets(self) -> List[UserWallet]:
        return list(self.session.execute(
            select(UserWallet).where(UserWallet.is_active.is_(True)).order_by(UserWallet.id)
        ).scalars())

    def wallets_by_address(self) -> Dict[str, UserWallet]:
        return {wallet.address: wallet for wallet in self.active_wallets()}

    # ===== Deposits =====

    def get_deposit(self, tx_hash: str, asset_key: str) -> Optional[Deposit]:
        return self.session.execute(
            select(Deposit).where(Deposit.tx_hash == tx_hash, Deposit.asset_key == asset_key)
        ).scalar_one_or_none()

    def deposit_exists(self, tx_hash: str, asset_key: str) -> bool:
        return self.get_deposit(tx_hash, asset_key) is not None

    def create_deposit(self, **fields) -> Optional[Deposit]:
        """Insert a deposit; returns None if (tx_hash, asset_key) already exists"""
        if self.deposit_exists(fields["tx_hash"], fields["asset_key"]):
            return None
        deposit = Deposit(**fields)
        try:
            with self.session.begin_nested():
                self.session.add(deposit)
        except IntegrityError:
            logger.info(f"Deposit {fields.get('tx_hash')} / {fields.get('asset_key')} already recorded")
            return None
        return deposit

    def highest_deposit_block(self) -> Optional[int]:
        return self.session.execute(select(func.max(Deposit.block_number))).scalar()

    def pending_deposits(self) -> List[Deposit]:
        return list(self.session.execute(
            select(Deposit).where(Deposit.status == DepositStatus.PENDING).order_by(Deposit.id)
        ).scalars())

    def sweepable_deposits(self, user_id, asset_key: str, threshold: int) -> List[Deposit]:
        return list(self.session.execute(
            select(Deposit).where(
                Deposit.user_id == str(user_id),
                Deposit.asset_key == asset_key,
                Deposit.swept.is_(False),
                Deposit.status == DepositStatus.CONFIRMED,
                Deposit.confirmations >= threshold,
            ).order_by(Deposit.id)
        ).scalars())

    def mark_deposits_swept(self, user_id, asset_key: str, sweep_tx_hash: str, threshold: int) -> List[int]:
        swept_ids = []
        for deposit in self.sweepable_deposits(user_id, asset_key, threshold):
            if deposit.mark_as_swept(sweep_tx_hash, threshold):
                swept_ids.append(deposit.id)
        return swept_ids

    def find_deposits_by_user(self, user_id, token_type=None, status: DepositStatus = None,
                              swept: bool = None, limit: int = 50) -> List[Deposit]:
        query = select(Deposit).where(Deposit.user_id == str(user_id))
        if token_type is not None:
            query = query.where(Deposit.token_type == token_type)
        if status is not None:
            query = query.where(Deposit.status == status)
        if swept is not None:
            query = query.where(Deposit.swept.is_(swept))
        query = query.order_by(Deposit.created_at.desc(), Deposit.id.desc()).limit(limit)
        return list(self.session.execute(query).scalars())

    def find_pending_sweeps(self, hours: int = 24) -> List[Deposit]:
        """Confirmed, un-swept deposits seen in the last ``hours``"""
        return list(self.session.execute(
            select(Deposit).where(
                Deposit.status == DepositStatus.CONFIRMED,
                Deposit.swept.is_(False),
                Deposit.created_at >= _since(hours=hours),
            ).order_by(Deposit.created_at)
        ).scalars())

    def deposit_stats(self, user_id) -> Dict[str, dict]:
        stats = {}
        grouped = defaultdict(list)
        for deposit in self.find_deposits_by_user(user_id, limit=None):
            grouped[deposit.asset_key].append(deposit)
        for asset_key, deposits in grouped.items():
            amounts = [d.amount for d in deposits]
            stats[asset_key] = {
                "token_symbol": deposits[0].token_symbol,
                "total_deposits": sum(amounts),
                "deposit_count": len(deposits),
                "avg_deposit": _avg(amounts),
                "swept_count": sum(1 for d in deposits if d.swept),
                "last_deposit": max(d.created_at for d in deposits),
            }
        return stats

    # ===== Sweeps =====

    def add_sweep(self, sweep: Sweep) -> Sweep:
        self.session.add(sweep)
        self.session.flush()
        return sweep

    def recent_sweep_exists(self, user_id, asset_key: str, seconds: int) -> bool:
        """A non-failed sweep for this user/asset inside the cooldown window"""
        return self.session.execute(
            select(Sweep.id).where(
                Sweep.user_id == str(user_id),
                Sweep.asset_key == asset_key,
                Sweep.status != SweepStatus.FAILED,
                Sweep.created_at >= _since(seconds=seconds),
            ).limit(1)
        ).first() is not None

    def processing_sweeps(self) -> List[Sweep]:
        """Sweeps that may be on chain without a recorded outcome, including signed-but-unsent ones"""
        return list(self.session.execute(
            select(Sweep).where(or_(
                Sweep.status == SweepStatus.PROCESSING,
                and_(Sweep.status == SweepStatus.PENDING, Sweep.tx_hash.is_not(None)),
            )).order_by(Sweep.id)
        ).scalars())

    def find_sweeps_by_user(self, user_id, limit: int = 50) -> List[Sweep]:
        query = select(Sweep).where(Sweep.user_id == str(user_id)).order_by(Sweep.id.desc())
        if limit:
            query = query.limit(limit)
        return list(self.session.execute(query).scalars())

    def find_failed_sweeps(self, hours: int = 24) -> List[Sweep]:
        return list(self.session.execute(
            select(Sweep).where(
                Sweep.status == SweepStatus.FAILED,
                Sweep.created_at >= _since(hours=hours),
            ).order_by(Sweep.created_at.desc())
        ).scalars())

    @staticmethod
    def _sweep_summary(sweeps: List[Sweep]) -> dict:
        gas_costs = [s.gas_cost or 0 for s in sweeps]
        return {
            "total_swept": sum(s.amount for s in sweeps if s.status == SweepStatus.COMPLETED),
            "sweep_count": len(sweeps),
            "total_gas_cost": sum(gas_costs),
            "avg_gas_cost": _avg(gas_costs),
            "completed_sweeps": sum(1 for s in sweeps if s.status == SweepStatus.COMPLETED),
            "failed_sweeps": sum(1 for s in sweeps if s.status == SweepStatus.FAILED),
            "last_sweep": max((s.created_at for s in sweeps), default=None),
        }

    def sweep_stats(self, user_id) -> Dict[str, dict]:
        grouped = defaultdict(list)
        for sweep in self.find_sweeps_by_user(user_id, limit=None):
            grouped[sweep.asset_key].append(sweep)
        return {asset_key: self._sweep_summary(sweeps) for asset_key, sweeps in grouped.items()}

    def sweep_system_stats(self) -> dict:
        return self._sweep_summary(list(self.session.execute(select(Sweep)).scalars()))

    # ===== Gas supply =====

    def add_gas_log(self, log: GasSupplyLog) -> GasSupplyLog:
        self.session.add(log)
        self.session.flush()
        return log

    def find_gas_by_wallet(self, address: str, limit: int = 50) -> List[GasSupplyLog]:
        query = select(GasSupplyLog).where(
            GasSupplyLog.wallet_address == address.lower()
        ).order_by(GasSupplyLog.id.desc())
        if limit:
            query = query.limit(limit)
        return list(self.session.execute(query).scalars())

    def find_gas_by_admin(self, admin_id, limit: int = 50) -> List[GasSupplyLog]:
        return list(self.session.execute(
            select(GasSupplyLog).where(
                GasSupplyLog.admin_id == str(admin_id)
            ).order_by(GasSupplyLog.id.desc()).limit(limit)
        ).scalars())

    def unconfirmed_supplies(self, address: str = None) -> List[GasSupplyLog]:
        """PENDING top-ups that carry a tx hash, i.e. signed and possibly on chain"""
        query = select(GasSupplyLog).where(
            GasSupplyLog.status == GasSupplyStatus.PENDING,
            GasSupplyLog.tx_hash.is_not(None),
        )
        if address:
            query = query.where(GasSupplyLog.wallet_address == address.lower())
        return list(self.session.execute(query.order_by(GasSupplyLog.id)).scalars())

    def find_pending_supplies(self, hours: int = 1) -> List[GasSupplyLog]:
        return list(self.session.execute(
            select(GasSupplyLog).where(
                GasSupplyLog.status == GasSupplyStatus.PENDING,
                GasSupplyLog.created_at >= _since(hours=hours),
            ).order_by(GasSupplyLog.created_at)
        ).scalars())

    def find_failed_supplies(self, hours: int = 24) -> List[GasSupplyLog]:
        return list(self.session.execute(
            select(GasSupplyLog).where(
                GasSupplyLog.status == GasSupplyStatus.FAILED,
                GasSupplyLog.created_at >= _since(hours=hours),
            ).order_by(GasSupplyLog.created_at.desc())
        ).scalars())

    @staticmethod
    def _gas_summary(logs: List[GasSupplyLog]) -> dict:
        gas_costs = [log.gas_cost or 0 for log in logs]
        return {
            "total_gas_supplied": sum(log.amount for log in logs if log.status == GasSupplyStatus.CONFIRMED),
            "total_supplies": len(logs),
            "total_gas_cost": sum(gas_costs),
            "avg_gas_cost": _avg(gas_costs),
            "auto_supplies": sum(1 for log in logs if log.supply_type == GasSupplyType.AUTO),
            "manual_supplies": sum(1 for log in logs if log.supply_type == GasSupplyType.MANUAL),
            "successful_supplies": sum(1 for log in logs if log.status == GasSupplyStatus.CONFIRMED),
            "failed_supplies": sum(1 for log in logs if log.status == GasSupplyStatus.FAILED),
            "last_supply": max((log.created_at for log in logs), default=None),
        }

    def gas_stats(self, address: str) -> Dict[str, dict]:
        grouped = defaultdict(list)
        for log in self.find_gas_by_wallet(address, limit=None):
            grouped[log.supply_type.value].append(log)
        return {supply_type: self._gas_summary(logs) for supply_type, logs in grouped.items()}

    def gas_system_stats(self) -> dict:
        return self._gas_summary(list(self.session.execute(select(GasSupplyLog)).scalars()))

    # ===== Scan cursors =====

    def get_cursor(self, name: str) -> Optional[int]:
        cursor = self.session.get(ScanCursor, name)
        return cursor.block_number if cursor else None

    def advance_cursor(self, name: str, block_number: int) -> int:
        """Move the cursor forward; never moves it back"""
        cursor = self.session.get(ScanCursor, name)
        if cursor is None:
            cursor = ScanCursor(name=name, block_number=block_number)
            self.session.add(cursor)
        elif block_number > cursor.block_number:
            cursor.block_number = block_number
        return cursor.block_number

    # ===== Incidents =====

    def add_incident(self, incident: SystemIncident) -> SystemIncident:
        self.session.add(incident)
        self.session.flush()
        return incident

    def get_incident(self, incident_id: int) -> Optional[SystemIncident]:
        return self.session.get(SystemIncident, incident_id)

    def find_incidents_by_type(self, error_type: ErrorType, limit: int = 100) -> List[SystemIncident]:
        return list(self.session.execute(
            select(SystemIncident).where(
                SystemIncident.error_type == error_type
            ).order_by(SystemIncident.id.desc()).limit(limit)
        ).scalars())

    def find_incidents_by_entity(self, entity_type: EntityType, entity_id) -> List[SystemIncident]:
        return list(self.session.execute(
            select(SystemIncident).where(
                SystemIncident.entity_type == entity_type,
                SystemIncident.entity_id == str(entity_id),
            ).order_by(SystemIncident.id.desc())
        ).scalars())

    def find_pending_retries(self, now: datetime.datetime = None) -> List[SystemIncident]:
        now = now or datetime.datetime.utcnow()
        candidates = self.session.execute(
            select(SystemIncident).where(
                SystemIncident.status == IncidentStatus.PENDING,
                SystemIncident.is_escalated.is_(False),
                SystemIncident.next_retry_at.is_not(None),
                SystemIncident.next_retry_at <= now,
            ).order_by(SystemIncident.next_retry_at)
        ).scalars()
        return [incident for incident in candidates if incident.needs_retry(now)]

    def find_escalated(self) -> List[SystemIncident]:
        return list(self.session.execute(
            select(SystemIncident).where(
                SystemIncident.is_escalated.is_(True),
                SystemIncident.status == IncidentStatus.ESCALATED,
            ).order_by(SystemIncident.escalated_at.desc())
        ).scalars())

    def _incidents_since(self, hours: float) -> List[SystemIncident]:
        return list(self.session.execute(
            select(SystemIncident).where(SystemIncident.created_at >= _since(hours=hours))
        ).scalars())

    def incident_stats(self, hours: int = 24) -> Dict[str, dict]:
        grouped = defaultdict(list)
        for incident in self._incidents_since(hours):
            grouped[incident.error_type.value].append(incident)
        return {
            error_type: {
                "count": len(incidents),
                "critical_count": sum(1 for i in incidents if i.severity == Severity.CRITICAL),
                "high_count": sum(1 for i in incidents if i.severity == Severity.HIGH),
                "resolved_count": sum(1 for i in incidents if i.status == IncidentStatus.RESOLVED),
                "escalated_count": sum(1 for i in incidents if i.is_escalated),
                "avg_retry_count": _avg([i.retry_count for i in incidents]),
                "last_error": max(i.created_at for i in incidents),
            }
            for error_type, incidents in grouped.items()
        }

    def system_health(self) -> dict:
        """Incident summary for the last hour with a 0-100 health score"""
        incidents = self._incidents_since(1)
        result = {
            "total_errors": len(incidents),
            "critical_errors": sum(1 for i in incidents if i.severity == Severity.CRITICAL),
            "high_errors": sum(1 for i in incidents if i.severity == Severity.HIGH),
            "pending_errors": sum(1 for i in incidents if i.status == IncidentStatus.PENDING),
            "escalated_errors": sum(1 for i in incidents if i.is_escalated),
            "resolved_errors": sum(1 for i in incidents if i.status == IncidentStatus.RESOLVED),
            "unique_service_count": len({i.service for i in incidents}),
        }

        health_score = 100
        if result["critical_errors"] > 0:
            health_score -= 50
        if result["high_errors"] > 0:
            health_score -= 25
        if result["pending_errors"] > 10:
            health_score -= 15
        if result["escalated_errors"] > 0:
            health_score -= 10
        result["health_score"] = max(0, health_score)
        return result

    def find_recurring(self, hours: int = 24, threshold: int = 3) -> List[dict]:
        grouped = defaultdict(list)
        for incident in self._incidents_since(hours):
            grouped[(incident.error_type, incident.entity_type, incident.entity_id)].append(incident)
        recurring = [
            {
                "error_type": error_type.value,
                "entity_type": entity_type.value,
                "entity_id": entity_id,
                "count": len(incidents),
                "last_error": max(i.created_at for i in incidents),
                "incident_ids": [i.id for i in incidents],
            }
            for (error_type, entity_type, entity_id), incidents in grouped.items()
            if len(incidents) >= threshold
        ]
        return sorted(recurring, key=lambda item: item["count"], reverse=True)
