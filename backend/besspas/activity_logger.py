import os
import logging
import json
from datetime import datetime, timezone
from typing import Optional, Any, Dict

from . import config, db, models

LOG_FILE = os.path.join(config.LOG_DIR, 'activity.log')

# Configure file logger
logger = logging.getLogger('activity')
logger.setLevel(logging.INFO)
if not logger.handlers:
    try:
        os.makedirs(config.LOG_DIR, exist_ok=True)
        fh = logging.FileHandler(LOG_FILE, encoding='utf-8')
        fmt = logging.Formatter('%(asctime)s %(levelname)s %(message)s')
        fh.setFormatter(fmt)
        logger.addHandler(fh)
    except OSError:
        # read-only checkout: fall back to the root handlers
        logging.basicConfig()


def _format_activity(user_display: Optional[str], operation: str, ref: Optional[str] = None, when: Optional[datetime] = None) -> str:
    """Return a one-line activity string.
    Example:
    user #acme-foods | op: create batch BATCH-20260112-0001 | ref: batch=4 | at: 2026-01-12 15:32 UTC
    """
    when = when or datetime.now(timezone.utc)
    user_part = f"#{user_display}" if user_display else '#anonymous'
    ref_part = f" | ref: {ref}" if ref else ''
    return f"user {user_part} | op: {operation}{ref_part} | at: {when.strftime('%Y-%m-%d %H:%M')} UTC"


def log_activity(
    db_session: Optional[Any],
    user_display: Optional[str],
    operation: str,
    path: Optional[str] = None,
    method: Optional[str] = None,
    status_code: Optional[int] = None,
    detail: Optional[Dict] = None,
    user_id: Optional[int] = None,
    ref: Optional[str] = None,
):
    """Write a formatted activity entry to activity.log and to audit_logs.detail.

    Call it after the business transaction committed: the DB write commits the
    given session. If db_session is None, a new session is opened for it.
    Activity logging must never fail the operation it describes, so errors are
    reported on the logger and swallowed.
    """
    message = _format_activity(user_display, operation, ref=ref)
    payload = {
        'path': path,
        'method': method,
        'status_code': status_code,
        'extra': detail,
    }
    try:
        logger.info(message + ' | ' + json.dumps(payload, ensure_ascii=False, default=str))
    except (TypeError, ValueError):
        logger.info(message)

    close_after = False
    try:
        if db_session is None:
            db_session = db.SessionLocal()
            close_after = True
        entry = models.AuditLog(
            user_id=user_id,
            path=path or '/',
            method=method or 'GET',
            status_code=status_code,
            detail=(message + '\n' + json.dumps(payload, ensure_ascii=False, default=str)),
        )
        db_session.add(entry)
        db_session.commit()
    except Exception:
        logger.exception('could not write audit_logs row for %r', operation)
        try:
            db_session.rollback()
        except Exception:
            logger.exception('rollback after failed audit write failed')
    finally:
        if close_after:
            db_session.close()
