"""JSONL logging for memory observability."""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


@dataclass
class LogEntry:
    """A single log entry."""

    timestamp: str
    event: str
    conversation_id: str | None = None
    project_id: str | None = None
    fact_id: int | None = None
    action: str | None = None
    duration_ms: float | None = None
    count: int | None = None
    error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict, excluding None values."""
        data = asdict(self)
        return {k: v for k, v in data.items() if v is not None and v != {} and v != []}


class JSONLLogger:
    """Logger that writes structured memory events in JSONL format."""

    def __init__(
        self,
        log_dir: str | Path | None = None,
        filename: str = "memory.jsonl",
        max_size_mb: float = 10.0,
    ) -> None:
        if log_dir is None:
            log_dir = Path.home() / ".recollect" / "logs"
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.filename = filename
        self.max_size_bytes = int(max_size_mb * 1024 * 1024)

    @property
    def log_path(self) -> Path:
        """Current log file path."""
        return self.log_dir / self.filename

    def _rotate_if_needed(self) -> None:
        """Rotate log file if it exceeds max size."""
        if not self.log_path.exists():
            return

        if self.log_path.stat().st_size >= self.max_size_bytes:
            timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S_%f")
            rotated_name = f"{self.log_path.stem}_{timestamp}.jsonl"
            self.log_path.rename(self.log_dir / rotated_name)

    def _write(self, entry: LogEntry) -> None:
        """Write a log entry to the file."""
        self._rotate_if_needed()

        with open(self.log_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry.to_dict(), ensure_ascii=False) + "\n")

    def log(
        self,
        event: str,
        *,
        conversation_id: str | None = None,
        project_id: str | None = None,
        fact_id: int | None = None,
        action: str | None = None,
        duration_ms: float | None = None,
        count: int | None = None,
        error: str | None = None,
        **extra: Any,
    ) -> None:
        """Log an event."""
        entry = LogEntry(
            timestamp=datetime.now(timezone.utc).isoformat(),
            event=event,
            conversation_id=conversation_id,
            project_id=project_id,
            fact_id=fact_id,
            action=action,
            duration_ms=duration_ms,
            count=count,
            error=error,
            extra=extra if extra else {},
        )
        self._write(entry)

    def log_extraction(
        self,
        conversation_id: str,
        success: bool,
        *,
        messages: int = 0,
        inserted: int = 0,
        duplicates: int = 0,
        duration_ms: float | None = None,
        error: str | None = None,
    ) -> None:
        """Log an extraction run."""
        self.log(
            "extraction",
            conversation_id=conversation_id,
            count=inserted,
            duration_ms=duration_ms,
            error=error if not success else None,
            success=success,
            messages=messages,
            duplicates=duplicates,
        )

    def log_context_build(
        self,
        *,
        project_id: str | None,
        candidates: int,
        selected: int,
        duration_ms: float | None = None,
        error: str | None = None,
    ) -> None:
        """Log a context block being built for an outbound model call."""
        self.log(
            "context_build",
            project_id=project_id,
            count=selected,
            duration_ms=duration_ms,
            error=error,
            candidates=candidates,
        )

    def log_fact_change(
        self,
        action: str,
        *,
        fact_id: int | None = None,
        count: int | None = None,
    ) -> None:
        """Log a manual fact edit (add, update, delete, clear, reembed)."""
        self.log("fact_change", action=action, fact_id=fact_id, count=count)
