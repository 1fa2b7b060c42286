"""Per-task output files.

Each task writes stdout and stderr into one file, ``<id>.log``. The
supervisor opens it for the child; the gateway reads it back for log
streams and the completion hook reads its tail.
"""

from collections import deque
from pathlib import Path
from typing import BinaryIO

import structlog


logger = structlog.get_logger()


class TaskLogs:
    """Owns the task log directory."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def ensure_directory(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)

    def path_for(self, task_id: int) -> Path:
        return self.directory / f"{task_id}.log"

    def open_for_task(self, task_id: int) -> BinaryIO:
        """Fresh, truncated log file handed to the child process."""
        self.ensure_directory()
        return open(self.path_for(task_id), "wb")

    def size(self, task_id: int) -> int:
        path = self.path_for(task_id)
        return path.stat().st_size if path.exists() else 0

    def read_from(self, task_id: int, offset: int, limit: int = 64 * 1024) -> bytes:
        """Read up to ``limit`` bytes starting at ``offset``."""
        path = self.path_for(task_id)
        if not path.exists():
            return b""
        with open(path, "rb") as handle:
            handle.seek(offset)
            return handle.read(limit)

    def tail_offset(self, task_id: int, lines: int) -> int:
        """Offset where the last ``lines`` lines of the log begin."""
        path = self.path_for(task_id)
        if lines <= 0 or not path.exists():
            return self.size(task_id)

        starts: deque[int] = deque(maxlen=lines)
        position = 0
        with open(path, "rb") as handle:
            for line in handle:
                starts.append(position)
                position += len(line)
        return starts[0] if starts else 0

    def tail(self, task_id: int, lines: int) -> str:
        if lines <= 0:
            return ""
        offset = self.tail_offset(task_id, lines)
        data = self.read_from(task_id, offset, limit=self.size(task_id))
        return data.decode("utf-8", errors="replace")

    def remove(self, task_id: int) -> None:
        try:
            self.path_for(task_id).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("task_log_remove_failed", task_id=task_id, error=str(e))

    def existing_ids(self) -> list[int]:
        if not self.directory.exists():
            return []
        ids = []
        for path in self.directory.glob("*.log"):
            if path.stem.isdigit():
                ids.append(int(path.stem))
        return sorted(ids)
