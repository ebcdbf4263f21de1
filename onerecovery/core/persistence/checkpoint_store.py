"""
Checkpoint persistence — atomic read/write of the last completed step.

The checkpoint lives in ``.build_progress`` in the working directory as
a single line of JSON: ``{"step": ..., "timestamp": ..., "digest": ...}``.
Writes are atomic (write to temp file, then rename) so a crash mid-write
leaves the previous checkpoint intact. A record that fails to parse or
whose digest does not match is reported and treated as absent.
"""

from __future__ import annotations

import json
import logging
import tempfile
from pathlib import Path

from pydantic import ValidationError

from onerecovery.core.models.pipeline import Checkpoint, Step

logger = logging.getLogger(__name__)

CHECKPOINT_FILE = ".build_progress"


def default_checkpoint_path(workdir: Path) -> Path:
    """Get the checkpoint path for a working directory."""
    return workdir / CHECKPOINT_FILE


class CheckpointStore:
    """Load, save and clear the pipeline checkpoint."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> Checkpoint | None:
        """Return the stored checkpoint, or None when absent or corrupt."""
        if not self.path.is_file():
            logger.debug("No checkpoint at %s", self.path)
            return None

        try:
            raw = self.path.read_text(encoding="utf-8").strip()
            checkpoint = Checkpoint.model_validate(json.loads(raw))
        except json.JSONDecodeError as e:
            logger.warning("Corrupt checkpoint %s: %s, ignoring it", self.path, e)
            return None
        except (ValidationError, OSError) as e:
            logger.warning("Cannot load checkpoint %s: %s, ignoring it", self.path, e)
            return None

        if not checkpoint.valid:
            logger.warning("Checkpoint %s failed its integrity check, ignoring it", self.path)
            return None

        logger.debug("Loaded checkpoint %s (at %s)", checkpoint.step.value, checkpoint.timestamp)
        return checkpoint

    def save(self, step: Step) -> Checkpoint:
        """Record ``step`` as the last completed step (atomic write)."""
        checkpoint = Checkpoint(step=step).sealed()
        content = json.dumps(checkpoint.model_dump(mode="json"), ensure_ascii=False) + "\n"

        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            _fd, tmp_path = tempfile.mkstemp(
                dir=self.path.parent,
                prefix=".progress_",
                suffix=".tmp",
            )
            tmp = Path(tmp_path)
            try:
                with open(_fd, "w", encoding="utf-8") as f:
                    f.write(content)
                tmp.rename(self.path)
                logger.debug("Checkpoint saved: %s", step.value)
            except Exception:
                tmp.unlink(missing_ok=True)
                raise
        except OSError as e:
            logger.error("Failed to save checkpoint to %s: %s", self.path, e)
            raise
        return checkpoint

    def clear(self) -> bool:
        """Remove the checkpoint file. Returns True if one existed."""
        if self.path.exists():
            self.path.unlink()
            logger.info("Checkpoint cleared")
            return True
        return False
