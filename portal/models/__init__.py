"""
Client Portal — Workflow Engine
SQLAlchemy instance shared by every model module.

Model modules:
    - workflow:     PhaseLedgerEntry, ClientAction, PhaseTransition, AutomationNotice
    - notification: Notification (in-app records written by event subscribers)
    - scheduling:   ScheduledJob (scheduler run registry)
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
