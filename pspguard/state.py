"""
Persisted lifecycle state for the local orchestrator.

One JSON file per cluster identity, holding the resource id returned by
create and the ReconciliationInputs round-tripped verbatim between cycles.
"""

import logging
from pathlib import Path
from typing import Optional, Tuple

from pydantic import BaseModel, ValidationError

from . import config
from .errors import ConfigurationError
from .models import ReconciliationInputs
from .utils import read_json, write_json

logger = logging.getLogger(__name__)


class StoredState(BaseModel):
    id: str
    outs: ReconciliationInputs


class StateStore:
    """Directory of ``<identity>.json`` state files."""

    def __init__(self, directory: str = config.STATE_DIR):
        self.directory = Path(directory)

    def path_for(self, identity: str) -> Path:
        return self.directory / f"{identity}.json"

    def load(self, identity: str) -> Optional[Tuple[str, ReconciliationInputs]]:
        """Return (resource_id, state) or None if the cluster was never created."""
        path = self.path_for(identity)
        if not path.exists():
            return None
        try:
            stored = StoredState.model_validate(read_json(path))
        except OSError as e:
            raise ConfigurationError(f"Cannot read state file {path}: {e}") from e
        except (ValueError, ValidationError) as e:
            raise ConfigurationError(f"Corrupt state file {path}: {e}") from e
        return stored.id, stored.outs

    def save(self, identity: str, resource_id: str, state: ReconciliationInputs) -> Path:
        try:
            path = write_json(
                StoredState(id=resource_id, outs=state).model_dump(mode="json"),
                self.path_for(identity),
            )
        except OSError as e:
            raise ConfigurationError(f"Cannot write state for {identity} under {self.directory}: {e}") from e
        logger.debug(f"Saved state for {identity} to {path}")
        return path

    def remove(self, identity: str) -> None:
        try:
            self.path_for(identity).unlink(missing_ok=True)
        except OSError as e:
            raise ConfigurationError(f"Cannot remove state for {identity}: {e}") from e
