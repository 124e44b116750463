from __future__ import annotations

import os
from pathlib import Path

from deadswitch.domain.state import SwitchState
from deadswitch.errors import StateCorruptionError, StateWriteError
from deadswitch.obs.logging import get_logger

logger = get_logger(__name__)


class StateStore:
    """JSON file holding the single ``SwitchState`` record.

    Callers hold the switch lock around every load/save pair; the store itself
    only guarantees that a reader never observes a half-written file.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()

    def exists(self) -> bool:
        return self.path.is_file()

    def load(self) -> SwitchState | None:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("state_load_unreadable", path=str(self.path), error=str(exc))
            return None

        if not raw.strip():
            logger.warning("state_load_corrupt", path=str(self.path), error="empty file")
            return None
        try:
            return SwitchState.from_json(raw)
        except (StateCorruptionError, ValueError, RecursionError) as exc:
            logger.warning("state_load_corrupt", path=str(self.path), error=str(exc))
            return None

    def save(self, state: SwitchState) -> None:
        tmp_path = self.path.with_name(f"{self.path.name}.tmp.{os.getpid()}")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as fh:
                fh.write(state.to_json())
                fh.write("\n")
                fh.flush()
                os.fsync(fh.fileno())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            try:
                tmp_path.unlink(missing_ok=True)
            except OSError:
                pass
            raise StateWriteError(f"failed to write state path={self.path}: {exc}") from exc
