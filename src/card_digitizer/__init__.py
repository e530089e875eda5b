"""
Card digitizer - capture, analyze, review and save scanned cards.

Shared utilities (config, logging, paths) live at the top level; the batch
reconciliation core lives under `orchestrator`.
"""

__all__ = [
    "config",
    "logging",
    "paths",
]
