"""Workflow services: ledger, gate, history, transitions, automation, scheduling."""
