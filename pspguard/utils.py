"""Small shared utilities for pspguard.

JSON file I/O for the state store. Writes go through a temp file and a rename
so a crash never leaves a half-written state file behind.
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any


def write_json(data: Any, path: str | Path) -> Path:
    """Atomically write *data* as pretty-printed JSON and return the path.

    The file is created with mode 0600 because state files hold kubeconfigs.
    """
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=p.parent, prefix=f".{p.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2, default=str)
        os.replace(tmp, p)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise
    return p


def read_json(path: str | Path) -> Any:
    """Read JSON from *path* and return the parsed object."""
    with open(path, encoding="utf-8") as fh:
        return json.load(fh)
