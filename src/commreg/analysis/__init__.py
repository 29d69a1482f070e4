"""End-to-end analysis workflow."""

from commreg.analysis.workflow import (
    AnalysisResult,
    CommunicationAnalysis,
    NumpyEncoder,
)

__all__ = [
    "AnalysisResult",
    "CommunicationAnalysis",
    "NumpyEncoder",
]
