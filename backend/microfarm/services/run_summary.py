"""Summary returned by every batch job, even when some units failed."""

from dataclasses import dataclass, field


@dataclass
class RunSummary:
    job: str
    processed: int = 0
    generated: int = 0
    skipped: int = 0
    failed: int = 0
    deactivated: int = 0
    notified: int = 0
    dry_run: bool = False
    errors: list[str] = field(default_factory=list)

    def record_failure(self, unit: str, exc: BaseException) -> None:
        self.failed += 1
        self.errors.append(f"{unit}: {exc}")

    def as_dict(self) -> dict:
        return {
            "job": self.job,
            "processed": self.processed,
            "generated": self.generated,
            "skipped": self.skipped,
            "failed": self.failed,
            "deactivated": self.deactivated,
            "notified": self.notified,
            "dry_run": self.dry_run,
            "errors": list(self.errors),
        }
