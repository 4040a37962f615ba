"""
Result objects for core operations.

Provides a unified result structure that the CLI (and any front end)
can use to display operation outcomes consistently.
"""

from dataclasses import dataclass, field
from typing import List, Dict, Any


@dataclass
class OperationResult:
    """
    Unified result object for all core operations.

    Attributes:
        ok: Whether the operation completed successfully
        operation: Name of the operation (e.g., "send_firmware", "ping")
        link: Transport description (e.g., "Serial(COM3)")
        cabinet: Target cabinet address
        outcome: "success", "failed", "cancelled" or "error"
        bytes_len: Number of firmware bytes acknowledged
        hashes: Dict of hash values (sha256 of the image)
        warnings: Non-blocking issues encountered
        errors: Blocking errors that caused failure
        metadata: Additional operation-specific data
        logs: Captured log lines from the operation
    """
    ok: bool
    operation: str
    link: str = ""
    cabinet: int = 0
    outcome: str = ""
    bytes_len: int = 0
    hashes: Dict[str, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)

    @property
    def cancelled(self) -> bool:
        return self.outcome == "cancelled"

    def add_warning(self, message: str) -> None:
        """Add a warning message."""
        self.warnings.append(message)

    def add_error(self, message: str) -> None:
        """Add an error message and mark result as failed."""
        self.errors.append(message)
        self.ok = False

    def add_log(self, message: str) -> None:
        self.logs.append(message)

    def to_summary(self) -> str:
        """Human-readable summary for CLI output."""
        if self.ok:
            status = "SUCCESS"
        elif self.cancelled:
            status = "CANCELLED"
        else:
            status = "FAILED"
        lines = [f"[{status}] {self.operation}"]

        if self.link:
            lines.append(f"  Link: {self.link}")
        if self.cabinet:
            lines.append(f"  Cabinet: {self.cabinet}")
        if self.bytes_len:
            lines.append(f"  Bytes: {self.bytes_len:,}")

        for name, value in self.hashes.items():
            lines.append(f"  {name}: {value[:16]}...")

        if self.warnings:
            lines.append("  Warnings:")
            for warn in self.warnings:
                lines.append(f"    - {warn}")

        if self.errors:
            lines.append("  Errors:")
            for err in self.errors:
                lines.append(f"    - {err}")

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "ok": self.ok,
            "operation": self.operation,
            "link": self.link,
            "cabinet": self.cabinet,
            "outcome": self.outcome,
            "bytes_len": self.bytes_len,
            "hashes": self.hashes,
            "warnings": self.warnings,
            "errors": self.errors,
            "metadata": self.metadata,
            "logs": self.logs,
        }

    @classmethod
    def success(cls, operation: str, **kwargs) -> "OperationResult":
        """Create a successful result."""
        kwargs.setdefault("outcome", "success")
        return cls(ok=True, operation=operation, **kwargs)

    @classmethod
    def failure(cls, operation: str, error: str = "", **kwargs) -> "OperationResult":
        """Create a failed result."""
        kwargs.setdefault("outcome", "error")
        result = cls(ok=False, operation=operation, **kwargs)
        if error:
            result.errors.append(error)
        return result
