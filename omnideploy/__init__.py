"""Deployment orchestrator for the Omniliquid trading venue on Solana."""

__version__ = "0.1.0"
