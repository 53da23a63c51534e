"""
Client Portal
Project phase workflow models.

Models:
    - PhaseLedgerEntry:  one phase occurrence of a project (open entry = current phase)
    - ClientAction:      a requirement the client/admin must complete within a phase occurrence
    - PhaseTransition:   immutable, append-only history of every phase change
    - AutomationNotice:  "already notified" marker per phase occurrence and notice kind

Architecture:
    Project(id) ──1:N──▶ PhaseLedgerEntry ──1:N──▶ ClientAction
    Project(id) ──1:N──▶ PhaseTransition
    PhaseLedgerEntry ──1:N──▶ AutomationNotice (one per kind)

Invariants:
    - At most one PhaseLedgerEntry per project has exited_at IS NULL
      (partial unique index ``uq_ledger_open_entry``).
    - PhaseLedgerEntry rows are version-counted; a write against a stale copy
      raises ``StaleDataError``.
    - ``revision`` increases by one on every transition or rule change of a
      project, across entries; clients echo it back as ``expected_version``.
    - PhaseTransition rows are never updated or deleted.
"""

from datetime import datetime, timezone

from sqlalchemy import event as _sa_event

from portal.models import db


# ── Constants ────────────────────────────────────────────────────────────────

ACTION_SOURCES = {"template", "admin", "override"}
NOTICE_KINDS = {"stuck", "action_reminder"}


def _iso(value):
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


class PhaseLedgerEntry(db.Model):
    """
    One occurrence of a project sitting in a phase.

    The open entry (``exited_at`` NULL) is the project's current phase and
    carries the automation rules, which are copied onto the next entry on
    every transition.
    """

    __tablename__ = "phase_ledger_entries"
    __table_args__ = (
        db.CheckConstraint("phase_index >= 0 AND phase_index <= 7", name="ck_ledger_phase_range"),
        db.CheckConstraint("stuck_threshold_days >= 1", name="ck_ledger_stuck_threshold"),
        db.Index("ix_ledger_project_entered", "project_id", "entered_at"),
        db.Index(
            "uq_ledger_open_entry",
            "project_id",
            unique=True,
            postgresql_where=db.text("exited_at IS NULL"),
            sqlite_where=db.text("exited_at IS NULL"),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.String(64), nullable=False, index=True,
                           comment="Identifier owned by the surrounding business domain")
    phase_index = db.Column(db.Integer, nullable=False, comment="0 onboarding … 7 launch")
    entered_at = db.Column(db.DateTime(timezone=True), nullable=False,
                           default=lambda: datetime.now(timezone.utc))
    exited_at = db.Column(db.DateTime(timezone=True), nullable=True)
    entered_by = db.Column(db.String(150), nullable=True, comment="Actor id or NULL for automation")

    # Automation rules (copied forward on every transition)
    auto_advance_enabled = db.Column(db.Boolean, nullable=False, default=False)
    stuck_notifications_enabled = db.Column(db.Boolean, nullable=False, default=True)
    stuck_threshold_days = db.Column(db.Integer, nullable=False, default=7)

    version_id = db.Column(db.Integer, nullable=False)
    revision = db.Column(db.Integer, nullable=False, default=1,
                         comment="Project-wide change counter exposed as the API version")

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_open(self) -> bool:
        return self.exited_at is None

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "phase_index": self.phase_index,
            "entered_at": _iso(self.entered_at),
            "exited_at": _iso(self.exited_at),
            "entered_by": self.entered_by,
            "auto_advance_enabled": self.auto_advance_enabled,
            "stuck_notifications_enabled": self.stuck_notifications_enabled,
            "stuck_threshold_days": self.stuck_threshold_days,
            "version": self.revision,
        }

    def __repr__(self):
        state = "open" if self.is_open else "closed"
        return f"<PhaseLedgerEntry {self.id}: {self.project_id}@{self.phase_index} [{state}]>"


class ClientAction(db.Model):
    """
    A single requirement inside a phase occurrence.

    Template actions are seeded when the phase is entered.  Admin actions
    added ahead of time for a future phase have ``ledger_entry_id`` NULL
    until that phase is entered, at which point they are adopted.
    """

    __tablename__ = "client_actions"
    __table_args__ = (
        db.CheckConstraint("phase_index >= 0 AND phase_index <= 7", name="ck_action_phase_range"),
        db.Index("ix_action_project_phase", "project_id", "phase_index"),
        db.Index("ix_action_entry", "ledger_entry_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.String(64), nullable=False, index=True)
    phase_index = db.Column(db.Integer, nullable=False)
    ledger_entry_id = db.Column(
        db.Integer, db.ForeignKey("phase_ledger_entries.id", ondelete="CASCADE"), nullable=True,
        comment="Phase occurrence; NULL for ad hoc actions on a phase not yet entered",
    )

    action_key = db.Column(db.String(60), nullable=True, comment="Template key, NULL for ad hoc")
    description = db.Column(db.String(500), nullable=False)
    requirement_type = db.Column(db.String(30), default="custom",
                                 comment="form, agreement, payment, review, approval, …")
    is_required = db.Column(db.Boolean, nullable=False, default=True)
    is_client_facing = db.Column(db.Boolean, nullable=False, default=True)
    source = db.Column(db.String(20), nullable=False, default="template",
                       comment="template | admin | override")
    sort_order = db.Column(db.Integer, default=0)

    is_completed = db.Column(db.Boolean, nullable=False, default=False)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_by = db.Column(db.String(150), nullable=True)
    notes = db.Column(db.Text, default="")

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "phase_index": self.phase_index,
            "ledger_entry_id": self.ledger_entry_id,
            "action_key": self.action_key,
            "description": self.description,
            "requirement_type": self.requirement_type,
            "is_required": self.is_required,
            "is_client_facing": self.is_client_facing,
            "source": self.source,
            "sort_order": self.sort_order,
            "is_completed": self.is_completed,
            "completed_at": _iso(self.completed_at),
            "completed_by": self.completed_by,
            "notes": self.notes,
        }

    def __repr__(self):
        done = "x" if self.is_completed else " "
        return f"<ClientAction {self.id} [{done}] {self.project_id}@{self.phase_index}: {self.description[:30]}>"


class PhaseTransition(db.Model):
    """
    Immutable record of one phase change.

    ``timestamp`` is strictly increasing per project; ``to_entry_id`` points
    at the ledger entry the transition opened.
    """

    __tablename__ = "phase_transitions"
    __table_args__ = (
        db.Index("ix_transition_project_ts", "project_id", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.String(64), nullable=False, index=True)
    from_phase_index = db.Column(db.Integer, nullable=False)
    to_phase_index = db.Column(db.Integer, nullable=False)
    trigger = db.Column(db.String(30), nullable=False,
                        comment="manual-admin | manual-client | automatic-gate | automatic-payment | automatic-stuck")
    actor_id = db.Column(db.String(150), nullable=True)
    notes = db.Column(db.Text, default="")
    timestamp = db.Column(db.DateTime(timezone=True), nullable=False)
    to_entry_id = db.Column(
        db.Integer, db.ForeignKey("phase_ledger_entries.id", ondelete="SET NULL"), nullable=True,
    )

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "from_phase_index": self.from_phase_index,
            "to_phase_index": self.to_phase_index,
            "trigger": self.trigger,
            "actor_id": self.actor_id,
            "notes": self.notes,
            "timestamp": _iso(self.timestamp),
        }

    def __repr__(self):
        return (
            f"<PhaseTransition {self.id}: {self.project_id} "
            f"{self.from_phase_index}→{self.to_phase_index} ({self.trigger})>"
        )


@_sa_event.listens_for(PhaseTransition, "before_update")
def _block_transition_update(mapper, connection, target) -> None:
    raise RuntimeError("phase_transitions is append-only; rows cannot be updated")


@_sa_event.listens_for(PhaseTransition, "before_delete")
def _block_transition_delete(mapper, connection, target) -> None:
    raise RuntimeError("phase_transitions is append-only; rows cannot be deleted")


class AutomationNotice(db.Model):
    """
    Marker that a notice was already sent for a phase occurrence.

    ``stuck`` notices fire once per occurrence; ``action_reminder`` notices
    repeat, so the row also tracks when and how often.
    """

    __tablename__ = "automation_notices"
    __table_args__ = (
        db.UniqueConstraint("ledger_entry_id", "kind", name="uq_notice_entry_kind"),
    )

    id = db.Column(db.Integer, primary_key=True)
    ledger_entry_id = db.Column(
        db.Integer, db.ForeignKey("phase_ledger_entries.id", ondelete="CASCADE"), nullable=False,
    )
    project_id = db.Column(db.String(64), nullable=False, index=True)
    phase_index = db.Column(db.Integer, nullable=False)
    kind = db.Column(db.String(30), nullable=False, comment="stuck | action_reminder")
    first_notified_at = db.Column(db.DateTime(timezone=True), nullable=False)
    last_notified_at = db.Column(db.DateTime(timezone=True), nullable=False)
    notify_count = db.Column(db.Integer, nullable=False, default=1)

    def to_dict(self):
        return {
            "id": self.id,
            "ledger_entry_id": self.ledger_entry_id,
            "project_id": self.project_id,
            "phase_index": self.phase_index,
            "kind": self.kind,
            "first_notified_at": _iso(self.first_notified_at),
            "last_notified_at": _iso(self.last_notified_at),
            "notify_count": self.notify_count,
        }

    def __repr__(self):
        return f"<AutomationNotice {self.kind} entry={self.ledger_entry_id} x{self.notify_count}>"
