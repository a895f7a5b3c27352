"""Perpetual keeper: position indexer, liquidator and funding-rate updater."""

__version__ = "1.0.0"
