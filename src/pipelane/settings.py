from __future__ import annotations

import os

CACHE_DIR = os.environ.get("PIPELANE_CACHE_DIR", ".pipelane/cache")
WORKERS = int(os.environ["PIPELANE_WORKERS"]) if os.environ.get("PIPELANE_WORKERS") else None
PUBLISH_ATTEMPTS = int(os.environ.get("PIPELANE_PUBLISH_ATTEMPTS", "3"))
BACKOFF_SECONDS = float(os.environ.get("PIPELANE_BACKOFF_SECONDS", "1.0"))
OS_ID = os.environ.get("PIPELANE_OS") or None
DOCKER = os.environ.get("PIPELANE_DOCKER", "docker")
