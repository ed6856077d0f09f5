"""Analysis record models and status state machine."""

from cry_analysis.analysis.models import (
    AnalysisRecord,
    AnalysisResult,
    AnalysisStatus,
    Recording,
)

__all__ = ["AnalysisRecord", "AnalysisResult", "AnalysisStatus", "Recording"]
