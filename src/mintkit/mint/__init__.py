# src/mintkit/mint/__init__.py
"""Mint pipeline: session bookkeeping and the single-flight orchestrator."""
