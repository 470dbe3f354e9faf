"""
Status and type enumerations for the ingestion pipeline.

Enums are string enums so they serialize cleanly in task results and logs.
"""
import enum


class LoadStatus(str, enum.Enum):
    """Lifecycle of a single file load."""

    PENDING = "pending"
    EXTRACTING = "extracting"
    NORMALIZING = "normalizing"
    WRITING = "writing"
    COMMITTED = "committed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (LoadStatus.COMMITTED, LoadStatus.FAILED)

    def can_transition_to(self, target: "LoadStatus") -> bool:
        return target in _LOAD_TRANSITIONS[self]


# Forward-only; every non-terminal state may fail
_LOAD_TRANSITIONS = {
    LoadStatus.PENDING: {LoadStatus.EXTRACTING, LoadStatus.FAILED},
    LoadStatus.EXTRACTING: {LoadStatus.NORMALIZING, LoadStatus.FAILED},
    LoadStatus.NORMALIZING: {LoadStatus.WRITING, LoadStatus.FAILED},
    LoadStatus.WRITING: {LoadStatus.COMMITTED, LoadStatus.FAILED},
    LoadStatus.COMMITTED: set(),
    LoadStatus.FAILED: set(),
}


class ReferenceKind(str, enum.Enum):
    """Deduplicated reference entities."""

    CODE = "code"
    PAYER = "payer"
    PLAN = "plan"


class SourceFormat(str, enum.Enum):
    """Machine-readable file layouts."""

    JSON = "json"
    CSV_WIDE = "csv_wide"
    CSV_TALL = "csv_tall"
