"""arq worker settings module.

Import path for arq CLI: arq willtank.workers.settings.WorkerSettings
"""

from __future__ import annotations

from willtank.workers.scanner import WorkerSettings

__all__ = ["WorkerSettings"]
