"""JSON file persistence for the monitor state."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import replace
from pathlib import Path
from typing import Optional, Union

from .models import CURRENT_STATE_VERSION, State, Store


def _fresh_state() -> State:
    return State(version=CURRENT_STATE_VERSION, stacks={})


class FileStore(Store):
    """Persists state as JSON on disk, replacing the file atomically."""

    def __init__(self, path: Union[str, os.PathLike], logger: Optional[logging.Logger] = None):
        self.path = Path(path)
        self._logger = logger or logging.getLogger(__name__)

    def load(self) -> State:
        """Read state from disk; a missing or corrupt file yields an empty state."""
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            self._logger.warning("state file missing, starting fresh (path=%s)", self.path)
            return _fresh_state()

        try:
            data = json.loads(raw)
            state = State.from_dict({} if data is None else data)
        except (ValueError, TypeError) as exc:
            self._logger.warning(
                "state file corrupt, starting fresh (path=%s): %s", self.path, exc
            )
            return _fresh_state()

        if state.version == 0:
            state.version = CURRENT_STATE_VERSION
            self._logger.info("migrated state file to version 1 (path=%s)", self.path)
        if state.version > CURRENT_STATE_VERSION:
            self._logger.warning(
                "state file version newer than supported, starting fresh "
                "(path=%s, file_version=%d, supported_version=%d)",
                self.path,
                state.version,
                CURRENT_STATE_VERSION,
            )
            return _fresh_state()
        return state

    def save(self, state: State) -> None:
        """Write state to disk atomically with owner-only permissions."""
        state = replace(
            state,
            version=state.version if state.version != 0 else CURRENT_STATE_VERSION,
            stacks=dict(state.stacks or {}),
        )
        directory = self.path.parent
        directory.mkdir(mode=0o755, parents=True, exist_ok=True)

        fd, temp_name = tempfile.mkstemp(prefix=".state-", suffix=".json", dir=directory)
        try:
            os.chmod(temp_name, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(json.dumps(state.to_dict()) + "\n")
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_name, self.path)
        except BaseException:
            try:
                os.remove(temp_name)
            except OSError:
                pass
            raise

        try:
            dir_fd = os.open(directory, os.O_RDONLY)
        except OSError:
            return
        try:
            os.fsync(dir_fd)
        except OSError:
            pass
        finally:
            os.close(dir_fd)