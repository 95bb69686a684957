"""Payout-to-escrow transaction pipeline driven by the scheduler."""
