"""Unattended fiat-to-crypto P2P relay: task scheduler and transaction pipeline."""

__version__ = "0.1.0"
