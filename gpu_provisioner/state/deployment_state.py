"""
Deployment state persistence: one current value per project+environment.
"""
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Tuple

from ..core.exceptions import StateError, StateTransitionError
from ..core.models import DeploymentState

logger = logging.getLogger(__name__)

_NEW_RUN = {DeploymentState.DEPLOYED, DeploymentState.FAILED, DeploymentState.PARTIAL_DEPLOY}
_AFTER_APPLY = _NEW_RUN | {
    DeploymentState.ROLLED_BACK, DeploymentState.ROLLBACK_FAILED, DeploymentState.DESTROYED,
}

ALLOWED_TRANSITIONS: Dict[DeploymentState, frozenset] = {
    DeploymentState.NOT_DEPLOYED: frozenset(_NEW_RUN),
    DeploymentState.DEPLOYED: frozenset(_AFTER_APPLY),
    DeploymentState.FAILED: frozenset(_AFTER_APPLY),
    DeploymentState.PARTIAL_DEPLOY: frozenset(_AFTER_APPLY),
    DeploymentState.ROLLED_BACK: frozenset(_NEW_RUN | {DeploymentState.DESTROYED}),
    DeploymentState.ROLLBACK_FAILED: frozenset({
        DeploymentState.ROLLED_BACK, DeploymentState.ROLLBACK_FAILED, DeploymentState.DESTROYED,
    }),
    DeploymentState.DESTROYED: frozenset(_NEW_RUN),
}

# States a rollback may start from
ROLLBACK_SOURCES = frozenset({
    DeploymentState.DEPLOYED, DeploymentState.PARTIAL_DEPLOY,
    DeploymentState.FAILED, DeploymentState.ROLLBACK_FAILED,
})


def can_transition(current: DeploymentState, requested: DeploymentState) -> bool:
    return requested in ALLOWED_TRANSITIONS[current]


class DeploymentStateStore(ABC):
    """Get/set access to the persisted deployment state."""

    @abstractmethod
    def get(self, project_key: str) -> DeploymentState:
        """Current state, NOT_DEPLOYED when nothing was recorded."""
        pass

    @abstractmethod
    def _write(self, project_key: str, state: DeploymentState, previous: DeploymentState) -> None:
        pass

    def updated_at(self, project_key: str) -> Optional[datetime]:
        return None

    def set(self, project_key: str, state: DeploymentState) -> DeploymentState:
        """Record a new state after validating the transition.

        Returns:
            The previous state

        Raises:
            StateTransitionError: If the transition is not allowed
        """
        previous = self.get(project_key)
        if not can_transition(previous, state):
            raise StateTransitionError(previous, state)
        self._write(project_key, state, previous)
        logger.info(f"Deployment state for {project_key}: {previous.value} -> {state.value}")
        return previous


class InMemoryDeploymentStateStore(DeploymentStateStore):
    """Store kept in memory, used for dry runs and tests."""

    def __init__(self, initial: Optional[Dict[str, DeploymentState]] = None):
        self._states: Dict[str, Tuple[DeploymentState, datetime]] = {
            key: (state, datetime.now()) for key, state in (initial or {}).items()
        }

    def get(self, project_key: str) -> DeploymentState:
        return self._states.get(project_key, (DeploymentState.NOT_DEPLOYED, None))[0]

    def updated_at(self, project_key: str) -> Optional[datetime]:
        return self._states.get(project_key, (None, None))[1]

    def _write(self, project_key: str, state: DeploymentState, previous: DeploymentState) -> None:
        self._states[project_key] = (state, datetime.now())


class FileDeploymentStateStore(DeploymentStateStore):
    """Store writing one JSON file per project+environment, replaced atomically."""

    def __init__(self, state_dir: Optional[Path] = None):
        """Initialize the store.

        Args:
            state_dir: Directory for state files. Defaults to ~/.gpu-provisioner/state/
        """
        if state_dir is None:
            state_dir = Path.home() / ".gpu-provisioner" / "state"

        self.state_dir = state_dir
        self.state_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, project_key: str) -> Path:
        return self.state_dir / f"{project_key}.json"

    def _load(self, project_key: str) -> Optional[Dict]:
        filepath = self._path(project_key)
        if not filepath.exists():
            return None
        try:
            with open(filepath, 'r') as f:
                return json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            raise StateError(f"Corrupted state file {filepath}: {e}")

    def get(self, project_key: str) -> DeploymentState:
        record = self._load(project_key)
        if record is None:
            return DeploymentState.NOT_DEPLOYED
        try:
            return DeploymentState(record['state'])
        except (KeyError, ValueError) as e:
            raise StateError(f"Unknown deployment state in {self._path(project_key)}: {e}")

    def updated_at(self, project_key: str) -> Optional[datetime]:
        record = self._load(project_key)
        if not record or 'updated_at' not in record:
            return None
        return datetime.fromisoformat(record['updated_at'])

    def _write(self, project_key: str, state: DeploymentState, previous: DeploymentState) -> None:
        filepath = self._path(project_key)
        temp_file = filepath.with_suffix('.tmp')
        record = {
            'project': project_key,
            'state': state.value,
            'previous_state': previous.value,
            'updated_at': datetime.now().isoformat(),
        }
        try:
            with open(temp_file, 'w') as f:
                json.dump(record, f, indent=2)
            temp_file.replace(filepath)
        except OSError as e:
            if temp_file.exists():
                temp_file.unlink()
            raise StateError(f"Failed to save deployment state: {e}")

    def clear(self, project_key: str) -> bool:
        filepath = self._path(project_key)
        if filepath.exists():
            filepath.unlink()
            return True
        return False
