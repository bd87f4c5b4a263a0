"""
Incident recording and the automatic retry loop.

Failures anywhere in the pipeline are persisted as SystemIncident rows by
IncidentService. RetryScheduler replays due incidents through handlers
registered per ErrorType: success resolves the incident, failure counts a
retry and eventually escalates it.
"""

import json
import threading
import traceback
from typing import Callable, Dict, List, Optional

from db.incidents import EntityType, RetryStrategy, SystemIncident
from db.store import LedgerStore
from shared.exceptions import ErrorType, SweeperError
from shared.logger import setup_logging

logger = setup_logging(__name__)

RetryHandler = Callable[[SystemIncident], None]


def _json_safe(context: Optional[dict]) -> dict:
    return json.loads(json.dumps(context or {}, default=str))


class IncidentService:

    def __init__(self, session_factory, max_retries: int = 3, service: str = "deposit_sweeper"):
        self.session_factory = session_factory
        self.max_retries = max_retries
        self.service = service

    def record(self, error: Exception, entity_type: EntityType = EntityType.SYSTEM, entity_id=None,
               context: dict = None, error_type: ErrorType = None,
               retry_strategy: RetryStrategy = None) -> SystemIncident:
        """Persist ``error`` as a PENDING incident in its own transaction"""
        if error_type is None:
            error_type = getattr(error, "error_type", ErrorType.VALIDATION_ERROR)
        if retry_strategy is None:
            retryable = error.retryable if isinstance(error, SweeperError) else True
            retry_strategy = RetryStrategy.EXPONENTIAL_BACKOFF if retryable else RetryStrategy.NO_RETRY

        incident = SystemIncident.create(
            error_type=error_type,
            error_message=str(error) or error.__class__.__name__,
            entity_type=entity_type,
            entity_id=entity_id,
            context=_json_safe(context),
            stack_trace="".join(traceback.format_exception(type(error), error, error.__traceback__)),
            service=self.service,
            retry_strategy=retry_strategy,
            max_retries=self.max_retries,
        )

        session = self.session_factory()
        try:
            LedgerStore(session).add_incident(incident)
            session.commit()
        except Exception:
            session.rollback()
            logger.error(f"❌ Could not persist incident {error_type.value}: {error}")
            raise

        logger.warning(
            f"🚨 Incident {incident.id} [{error_type.value}/{incident.severity.value}] "
            f"{entity_type.value}:{entity_id} - {error}"
        )
        return incident


class RetryScheduler:
    """Periodically replays due incidents through registered handlers"""

    def __init__(self, session_factory, interval: float = 15, stop_event: threading.Event = None):
        self.session_factory = session_factory
        self.interval = interval
        self.stop_event = stop_event or threading.Event()
        self.handlers: Dict[ErrorType, RetryHandler] = {}
        self._thread: Optional[threading.Thread] = None

    def register(self, error_type: ErrorType, handler: RetryHandler):
        self.handlers[error_type] = handler

    def run_once(self) -> List[int]:
        """Retry every due incident that has a handler; returns the ids attempted"""
        session = self.session_factory()
        store = LedgerStore(session)
        attempted = []

        for incident in store.find_pending_retries():
            handler = self.handlers.get(incident.error_type)
            if handler is None:
                continue
            attempted.append(incident.id)
            try:
                handler(incident)
            except Exception as e:
                session.rollback()
                incident = store.get_incident(attempted[-1])
                incident.increment_retry(str(e))
                if incident.is_escalated:
                    logger.error(f"⛔ Incident {incident.id} escalated after {incident.retry_count} retries: {e}")
                else:
                    logger.warning(f"🔁 Retry {incident.retry_count} of incident {incident.id} failed: {e}")
            else:
                incident.resolve(resolved_by="system", resolution="AUTO_RETRY")
                logger.info(f"✅ Incident {incident.id} resolved by retry")
            session.commit()

        return attempted

    def _loop(self):
        logger.info(f"🔄 Retry scheduler started (every {self.interval}s)")
        while not self.stop_event.wait(self.interval):
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"❌ Retry scan failed: {e}")
                logger.error(traceback.format_exc())
        logger.info("🛑 Retry scheduler stopped")

    def start(self):
        self._thread = threading.Thread(target=self._loop, name="retry-scheduler", daemon=True)
        self._thread.start()

    def join(self, timeout: float = None):
        if self._thread:
            self._thread.join(timeout)
