"""Subscription reconciliation engine: plan resolution, periods, state machine, coordinator."""
