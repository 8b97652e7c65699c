"""
File-based storage for reward cycles.
One JSON file per cycle, plus marker files carrying operator commands.
"""

import os
import re
import tempfile
from typing import List, Optional

from loguru import logger
from pydantic import ValidationError

from taxbot.solana.errors import PersistenceError
from taxbot.solana.models import Cycle

CYCLE_FILE = re.compile(r"^cycle_(\d+)\.json$")
RETRY_MARKER = re.compile(r"^retry_(\d+)\.request$")


class CycleStore:
    """Durable store for Cycle records."""

    def __init__(self, state_dir: str = "data/cycles"):
        """
        Initialize cycle storage.

        Args:
            state_dir: Directory holding cycle files

        Raises:
            PersistenceError: If the directory cannot be created
        """
        self.state_dir = state_dir
        self._ensure_state_directory()

    def _ensure_state_directory(self) -> None:
        try:
            os.makedirs(self.state_dir, exist_ok=True)
        except OSError as e:
            raise PersistenceError(f"Cannot create state directory {self.state_dir}: {e}") from e
        logger.info(f"Cycle storage directory ready: {self.state_dir}")

    def _cycle_file(self, sequence: int) -> str:
        return os.path.join(self.state_dir, f"cycle_{sequence:06d}.json")

    def _marker_file(self, kind: str, sequence: int) -> str:
        return os.path.join(self.state_dir, f"{kind}_{sequence}.request")

    def save(self, cycle: Cycle) -> None:
        """
        Write a cycle atomically, replacing any earlier version.

        Raises:
            PersistenceError: If the write fails
        """
        path = self._cycle_file(cycle.sequence)
        payload = cycle.model_dump_json(indent=2)

        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(dir=self.state_dir, prefix=".cycle_", suffix=".tmp")
            with os.fdopen(fd, "w") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError as e:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(f"Failed to persist cycle {cycle.sequence}: {e}")
            raise PersistenceError(f"Cannot write cycle {cycle.sequence} to {path}: {e}") from e

        logger.debug(f"Persisted cycle {cycle.sequence} ({cycle.status.value})")

    def load(self, sequence: int) -> Optional[Cycle]:
        """
        Load one cycle.

        Returns:
            The cycle, or None if it was never written

        Raises:
            PersistenceError: If the file exists but cannot be read or parsed
        """
        path = self._cycle_file(sequence)
        if not os.path.exists(path):
            return None

        try:
            with open(path, "r") as f:
                return Cycle.model_validate_json(f.read())
        except (OSError, ValidationError) as e:
            raise PersistenceError(f"Cannot read cycle {sequence} from {path}: {e}") from e

    def sequences(self) -> List[int]:
        try:
            names = os.listdir(self.state_dir)
        except OSError as e:
            raise PersistenceError(f"Cannot list {self.state_dir}: {e}") from e

        return sorted(int(match.group(1)) for match in map(CYCLE_FILE.match, names) if match)

    def load_all(self) -> List[Cycle]:
        """All persisted cycles in sequence order."""
        return [self.load(sequence) for sequence in self.sequences()]

    def unfinished(self) -> List[Cycle]:
        """Cycles that are neither Committed nor Failed."""
        return [cycle for cycle in self.load_all() if not cycle.is_terminal]

    def latest(self) -> Optional[Cycle]:
        sequences = self.sequences()
        if not sequences:
            return None
        return self.load(sequences[-1])

    def next_sequence(self) -> int:
        sequences = self.sequences()
        return sequences[-1] + 1 if sequences else 1

    def _touch(self, path: str) -> None:
        try:
            with open(path, "w"):
                pass
        except OSError as e:
            raise PersistenceError(f"Cannot write marker {path}: {e}") from e

    def _remove(self, path: str) -> None:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise PersistenceError(f"Cannot remove marker {path}: {e}") from e

    # Operator commands

    def request_cancel(self, sequence: int) -> None:
        self._touch(self._marker_file("cancel", sequence))
        logger.info(f"Cancel requested for cycle {sequence}")

    def is_cancel_requested(self, sequence: int) -> bool:
        return os.path.exists(self._marker_file("cancel", sequence))

    def clear_cancel(self, sequence: int) -> None:
        self._remove(self._marker_file("cancel", sequence))

    def request_retry(self, sequence: int) -> None:
        self._touch(self._marker_file("retry", sequence))
        logger.info(f"Retry requested for cycle {sequence}")

    def retry_requests(self) -> List[int]:
        """Sequences with a pending retry request, oldest cycle first."""
        try:
            names = os.listdir(self.state_dir)
        except OSError as e:
            raise PersistenceError(f"Cannot list {self.state_dir}: {e}") from e

        return sorted(int(match.group(1)) for match in map(RETRY_MARKER.match, names) if match)

    def clear_retry(self, sequence: int) -> None:
        self._remove(self._marker_file("retry", sequence))
