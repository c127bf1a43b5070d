"""
errors.py — Structured failures raised by the preparation pipeline.

Every error names the stage it came from and the offending records so the
caller can report them without parsing the message.
"""

from typing import List, Optional, Sequence


class PipelineError(ValueError):
    """Base class. `stage` names the step, `records` the offending ids/columns."""

    def __init__(self, message: str, stage: str = "", records: Optional[Sequence] = None):
        super().__init__(message)
        self.stage = stage
        self.records: List = list(records) if records is not None else []


class ConfigError(PipelineError):
    """Missing or inconsistent pipeline_config.yaml entries."""

    def __init__(self, message: str, records: Optional[Sequence] = None):
        super().__init__(message, stage="config", records=records)


class SchemaError(PipelineError):
    """An expected column is absent, or an identifier is malformed."""


class AnnotationError(PipelineError):
    """The gene annotation source could not be read or queried."""


class DuplicateGeneError(PipelineError):
    """A gene symbol is still duplicated after aggregation."""


class SampleMismatchError(PipelineError):
    """
    Sample ids present in one table but not the other.

    missing_in_left: ids found only in the right-hand table
    missing_in_right: ids found only in the left-hand table
    """

    def __init__(self, stage: str, missing_in_left: Sequence[str], missing_in_right: Sequence[str],
                 left_name: str = "metadata", right_name: str = "counts"):
        self.missing_in_left = sorted(missing_in_left)
        self.missing_in_right = sorted(missing_in_right)
        lines = [f"[{stage}] sample ids do not match between {left_name} and {right_name}"]
        if self.missing_in_right:
            lines.append(
                f"  {len(self.missing_in_right)} in {left_name} only: {self.missing_in_right}"
            )
        if self.missing_in_left:
            lines.append(
                f"  {len(self.missing_in_left)} in {right_name} only: {self.missing_in_left}"
            )
        super().__init__(
            "\n".join(lines),
            stage=stage,
            records=self.missing_in_right + self.missing_in_left,
        )
