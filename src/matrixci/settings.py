from __future__ import annotations
import os

WORK_DIR = os.environ.get("MATRIXCI_WORK_DIR", ".matrixci/work")
MAX_WORKERS = int(os.environ["MATRIXCI_MAX_WORKERS"]) if os.environ.get("MATRIXCI_MAX_WORKERS") else None
ELEVATION_COMMAND = os.environ.get("MATRIXCI_ELEVATION_COMMAND")  # unset: each step's own command
EVENT = os.environ.get("MATRIXCI_EVENT") or os.environ.get("GITHUB_EVENT_NAME") or "push"
PROVISION_MODE = os.environ.get("MATRIXCI_PROVISION_MODE", "host")
