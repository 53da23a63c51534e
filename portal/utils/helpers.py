"""Shared utility functions used by the workflow services and blueprints.

utcnow / as_utc:      timezone-aware timestamps (SQLite hands back naive values)
parse_bool:           tolerant flag parsing for JSON bodies and env vars
clean_text:           free-text fields from JSON bodies (type + length checked)
project_transaction:  commit-or-rollback unit of work for one project
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from portal.core.exceptions import ConcurrentModificationError, ServiceUnavailableError, ValidationError
from portal.models import db

logger = logging.getLogger(__name__)

MAX_NOTES_LENGTH = 2000


def utcnow():
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value):
    """Coerce a stored datetime to aware UTC.

    SQLite drops tzinfo on the way back out; every timestamp this app writes
    is UTC, so a naive value is simply tagged rather than converted.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_bool(value, default=False):
    """Interpret ``value`` as a boolean flag.

    Accepts real bools plus the usual string spellings ("true", "1", "yes",
    "on").  ``None`` yields ``default``.
    """
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def clean_text(value, field, *, max_length, default=""):
    """Return ``value`` stripped, or ``default`` when absent or blank.

    Anything but a string, or a string longer than ``max_length``, raises
    ValidationError so it never reaches a column.
    """
    if value is None:
        return default
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string",
                              details={field: type(value).__name__})
    value = value.strip()
    if not value:
        return default
    if len(value) > max_length:
        raise ValidationError(f"{field} must be at most {max_length} characters",
                              details={field: len(value)})
    return value


# ── Database unit of work ───────────────────────────────────────────────────

@contextmanager
def project_transaction(project_id):
    """Run the enclosed block as one atomic unit for ``project_id``.

    Commits on normal exit.  On any failure the session is rolled back so no
    partial transition survives, and persistence errors are translated:

    StaleDataError / IntegrityError → ConcurrentModificationError (retryable)
    OperationalError                → ServiceUnavailableError

    Usage::

        with project_transaction(project_id):
            close_entry(entry, now)
            open_entry(project_id, to_index, now)
    """
    try:
        yield db.session
        db.session.commit()
    except (StaleDataError, IntegrityError) as exc:
        db.session.rollback()
        logger.warning("Concurrent modification on project %s: %s", project_id, exc)
        raise ConcurrentModificationError(project_id) from exc
    except OperationalError as exc:
        db.session.rollback()
        logger.exception("Database operational error for project %s", project_id)
        raise ServiceUnavailableError(
            "Workflow storage is unavailable; try again shortly",
            details={"project_id": project_id},
        ) from exc
    except Exception:
        db.session.rollback()
        raise
