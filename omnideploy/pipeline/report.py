"""Per-stage outcome accounting."""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

logger = logging.getLogger(__name__)


class ItemStatus(str, Enum):
    OK = "ok"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ItemResult:
    item: str
    status: ItemStatus
    detail: str = ""
    error: Optional[Exception] = None

    @property
    def succeeded(self) -> bool:
        # Already-applied items count as successes
        return self.status in (ItemStatus.OK, ItemStatus.SKIPPED)


@dataclass
class StageReport:
    """What one stage attempted and how it went.

    A stage is failed when it was aborted (missing precondition, corrupt
    artifact, refused), cancelled, or when every attempted item failed.
    """
    stage: str
    items: List[ItemResult] = field(default_factory=list)
    aborted: Optional[Exception] = None
    cancelled: bool = False

    def ok_item(self, item: str, detail: str = "") -> ItemResult:
        return self._add(ItemResult(item, ItemStatus.OK, detail))

    def skipped_item(self, item: str, detail: str = "") -> ItemResult:
        return self._add(ItemResult(item, ItemStatus.SKIPPED, detail))

    def failed_item(self, item: str, error: Exception) -> ItemResult:
        return self._add(ItemResult(item, ItemStatus.FAILED, str(error), error))

    def _add(self, result: ItemResult) -> ItemResult:
        self.items.append(result)
        return result

    def abort(self, error: Exception) -> None:
        self.aborted = error

    @property
    def attempted(self) -> int:
        return len(self.items)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.items if r.succeeded)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.items if r.status is ItemStatus.FAILED)

    @property
    def skipped(self) -> int:
        return sum(1 for r in self.items if r.status is ItemStatus.SKIPPED)

    @property
    def failures(self) -> List[ItemResult]:
        return [r for r in self.items if r.status is ItemStatus.FAILED]

    @property
    def fatal_errors(self) -> List[str]:
        fatal = []
        if self.aborted is not None:
            fatal.append(f"{type(self.aborted).__name__}: {self.aborted}")
        if self.cancelled:
            fatal.append("cancelled")
        if self.attempted and not self.succeeded:
            fatal.append(f"all {self.attempted} attempted items failed")
        return fatal

    @property
    def ok(self) -> bool:
        return not self.fatal_errors

    def log_summary(self) -> None:
        summary = (
            f"{self.stage}: {self.attempted} attempted, {self.succeeded} succeeded "
            f"({self.skipped} already applied), {self.failed} failed"
        )
        if self.ok:
            logger.info(summary)
            return
        logger.error(f"{summary} - stage FAILED")
        for reason in self.fatal_errors:
            logger.error(f"  {reason}")
        for result in self.failures:
            logger.error(f"  [fail] {result.item}: {result.detail}")

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "ok": self.ok,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "fatal": self.fatal_errors,
            "items": [
                {"item": r.item, "status": r.status.value, "detail": r.detail}
                for r in self.items
            ],
        }
