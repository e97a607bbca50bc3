"""
Result objects for core operations.

Provides a unified result structure that the CLI (and any other front end)
can use to display operation outcomes consistently.
"""

from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional


@dataclass
class OperationResult:
    """
    Unified result object for all core operations.

    Attributes:
        ok: Whether the operation completed successfully
        operation: Name of the operation (e.g., "flash", "convert")
        device: Device profile or port description
        bytes_len: Number of bytes processed
        hashes: Dict of hash values (sha256, etc.)
        warnings: Non-blocking issues encountered
        errors: Blocking errors that caused failure
        metadata: Additional operation-specific data
        logs: Captured log lines from the operation
    """
    ok: bool
    operation: str
    device: str = ""
    bytes_len: int = 0
    hashes: Dict[str, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)

    def add_warning(self, message: str) -> None:
        """Add a warning message."""
        self.warnings.append(message)

    def add_error(self, message: str) -> None:
        """Add an error message and mark result as failed."""
        self.errors.append(message)
        self.ok = False

    def add_log(self, message: str) -> None:
        """Add a log line to the result."""
        self.logs.append(message)

    def _summary_lines(self) -> List[str]:
        status = "SUCCESS" if self.ok else "FAILED"
        lines = [f"[{status}] {self.operation}"]

        if self.device:
            lines.append(f"  Device: {self.device}")
        if self.bytes_len:
            lines.append(f"  Bytes: {self.bytes_len:,}")

        if self.hashes:
            for name, value in self.hashes.items():
                lines.append(f"  {name}: {value[:16]}...")
        return lines

    def _issue_lines(self) -> List[str]:
        lines = []
        if self.warnings:
            lines.append("  Warnings:")
            for warn in self.warnings:
                lines.append(f"    - {warn}")

        if self.errors:
            lines.append("  Errors:")
            for err in self.errors:
                lines.append(f"    - {err}")
        return lines

    def to_summary(self) -> str:
        """
        Generate a human-readable summary string.

        Suitable for CLI output or simple logging.
        """
        return "\n".join(self._summary_lines() + self._issue_lines())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "ok": self.ok,
            "operation": self.operation,
            "device": self.device,
            "bytes_len": self.bytes_len,
            "hashes": self.hashes,
            "warnings": self.warnings,
            "errors": self.errors,
            "metadata": {k: v for k, v in self.metadata.items() if not isinstance(v, bytes)},
            "logs": self.logs,
        }

    @classmethod
    def success(
        cls,
        operation: str,
        device: str = "",
        bytes_len: int = 0,
        **kwargs,
    ) -> "OperationResult":
        """Create a successful result."""
        return cls(
            ok=True,
            operation=operation,
            device=device,
            bytes_len=bytes_len,
            **kwargs,
        )

    @classmethod
    def failure(
        cls,
        operation: str,
        error: str,
        device: str = "",
        **kwargs,
    ) -> "OperationResult":
        """Create a failed result."""
        result = cls(
            ok=False,
            operation=operation,
            device=device,
            **kwargs,
        )
        result.errors.append(error)
        return result


@dataclass
class FlashResult(OperationResult):
    """
    Terminal outcome of one flash operation.

    Attributes:
        mode: Block encoding strategy name ("raw" or "uf2")
        phase: Final phase value ("completed" or "failed")
        blocks_written: Blocks successfully written
        total_blocks: Blocks the image was split into
        failed_block: Index of the block whose write failed, if any
        reason: Failure reason ("Cancelled" for caller aborts)
    """
    mode: str = ""
    phase: str = ""
    blocks_written: int = 0
    total_blocks: int = 0
    failed_block: Optional[int] = None
    reason: str = ""

    @property
    def cancelled(self) -> bool:
        return self.reason == "Cancelled"

    def to_summary(self) -> str:
        lines = self._summary_lines()
        if self.mode:
            lines.append(f"  Mode: {self.mode}")
        lines.append(f"  Blocks: {self.blocks_written}/{self.total_blocks}")
        if self.failed_block is not None:
            lines.append(f"  Failed block: {self.failed_block}")
        if self.reason:
            lines.append(f"  Reason: {self.reason}")
        return "\n".join(lines + self._issue_lines())

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "mode": self.mode,
            "phase": self.phase,
            "blocks_written": self.blocks_written,
            "total_blocks": self.total_blocks,
            "failed_block": self.failed_block,
            "reason": self.reason,
        })
        return data
