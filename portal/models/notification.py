"""
Client Portal
In-app notifications produced by workflow events.

Addressing: a row goes to one audience ("admins", "client"), to a single
user id, or to everyone (BROADCAST).  Readers see their own rows plus
broadcasts, scoped to a project when one is given.
"""

from datetime import datetime, timezone

from portal.models import db


# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_CATEGORIES = {"phase", "action", "payment", "system"}
NOTIFICATION_SEVERITIES = {"info", "warning", "error", "success"}
BROADCAST = "all"


class Notification(db.Model):
    """One record per recipient per workflow event."""

    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.String(64), nullable=True, index=True)
    recipient = db.Column(db.String(150), default=BROADCAST, index=True,
                          comment="User id, 'admins', 'client' or 'all' for broadcast")
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")
    category = db.Column(db.String(30), default="system")
    severity = db.Column(db.String(20), default="info")

    # Link to source entity
    entity_type = db.Column(db.String(30), default="", comment="phase/client_action/...")
    entity_id = db.Column(db.String(64), nullable=True)
    event_type = db.Column(db.String(40), nullable=True,
                           comment="Workflow event that produced this notification")

    # Read tracking
    is_read = db.Column(db.Boolean, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    @classmethod
    def visible_to(cls, recipient, project_id=None):
        """Rows addressed to ``recipient`` or broadcast, optionally for one project."""
        q = cls.query.filter(cls.recipient.in_((recipient, BROADCAST)))
        if project_id:
            q = q.filter(cls.project_id == project_id)
        return q

    def mark_read(self):
        self.is_read = True
        self.read_at = datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "recipient": self.recipient,
            "title": self.title,
            "message": self.message,
            "category": self.category,
            "severity": self.severity,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "event_type": self.event_type,
            "is_read": self.is_read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Notification {self.id}: {self.title[:40]}>"
