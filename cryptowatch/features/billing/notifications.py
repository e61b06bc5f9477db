"""
Notification dispatch and error reporting collaborators.

Both are fire-and-forget from the billing code's point of view: a failing
notifier or reporter is logged and never undoes a committed state change.
"""
import json
import logging
from typing import Any, Dict, Optional, Protocol

from sqlalchemy import insert

from cryptowatch.core.database import get_db_session, error_logs
from cryptowatch.core.logging import LOGGER_NAME, log_event

logger = logging.getLogger(LOGGER_NAME)


class Notifier(Protocol):
    def notify(self, user_id: str, event: str, payload: Dict[str, Any]) -> None:
        ...


class ErrorReporter(Protocol):
    def report(self, source: str, exc: BaseException, context: Optional[Dict[str, Any]] = None) -> None:
        ...


class LogNotifier:
    """Default notifier: one structured log line per user-facing billing event."""

    def notify(self, user_id: str, event: str, payload: Dict[str, Any]) -> None:
        log_event("info", "notification.dispatched", user_id=user_id, event_type=event, extra=payload)


class DatabaseErrorReporter:
    """Logs with traceback and keeps a row in error_logs for the ops dashboard."""

    def report(self, source: str, exc: BaseException, context: Optional[Dict[str, Any]] = None) -> None:
        logger.error(
            f"[{source}] {type(exc).__name__}: {exc}",
            exc_info=(type(exc), exc, exc.__traceback__),
            extra={"error_source": source},
        )
        try:
            with get_db_session() as session:
                session.execute(
                    insert(error_logs).values(
                        source=source,
                        message=f"{type(exc).__name__}: {exc}"[:2000],
                        context_json=json.dumps(context or {}, default=str),
                    )
                )
        except Exception as e:
            logger.warning(f"[{source}] failed to persist error log: {e}")


def safe_notify(notifier: Optional[Notifier], user_id: str, event: str, payload: Dict[str, Any]) -> None:
    """Dispatch without letting a notifier failure escape."""
    if notifier is None:
        return
    try:
        notifier.notify(user_id, event, payload)
    except Exception as e:
        logger.warning(f"[notify] {event} for {user_id} failed: {e}")
