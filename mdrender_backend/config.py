from __future__ import annotations

import os
from pathlib import Path


# How long a render request may stay pending before the caller gets a timeout.
PROCESS_TIMEOUT_MS = int(os.environ.get("MDRENDER_PROCESS_TIMEOUT_MS", "10000"))

# Health check budget.
PING_TIMEOUT_MS = int(os.environ.get("MDRENDER_PING_TIMEOUT_MS", "1000"))

# A spawned process has to import the pipeline stack before it reports ready.
INIT_TIMEOUT_MS = int(os.environ.get("MDRENDER_INIT_TIMEOUT_MS", "15000"))

# "process" (default) isolates the pipeline in a child process; "thread" keeps
# it in-process, which is cheaper to start but shares the interpreter.
UNIT_KIND = os.environ.get("MDRENDER_UNIT_KIND", "process").strip().lower() or "process"

# Optional JSON file replacing the built-in sanitization allow-lists.
_schema_raw = os.environ.get("MDRENDER_SCHEMA_PATH")
if _schema_raw and _schema_raw.strip():
    SCHEMA_PATH: Path | None = Path(_schema_raw).resolve()
else:
    SCHEMA_PATH = None

# Request size limit for the HTTP surface (best-effort; proxies usually enforce one too).
MAX_MARKDOWN_BYTES = int(os.environ.get("MDRENDER_MAX_MARKDOWN_BYTES", str(2 * 1024 * 1024)))  # 2MB

LOG_LEVEL = os.environ.get("MDRENDER_LOG_LEVEL", "INFO").strip().upper() or "INFO"

# Unit kinds accepted by create_coordinator().
UNIT_KINDS = {"process", "thread"}
