from __future__ import annotations


class AnalysisError(ValueError):
    """Run-aborting failure, tagged with the pipeline stage that raised it."""

    def __init__(self, message: str, stage: str = "analysis") -> None:
        super().__init__(message)
        self.stage = stage

    def __str__(self) -> str:
        return f"[{self.stage}] {self.args[0]}"


class InputShapeError(AnalysisError):
    pass


class RowRangeError(InputShapeError):
    pass


class ConfigurationError(AnalysisError):
    pass


class ExportError(AnalysisError):
    pass
