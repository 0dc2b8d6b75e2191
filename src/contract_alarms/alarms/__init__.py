"""Alarm layer - alarm store, sync cursors, reorg policy and reconciliation."""
