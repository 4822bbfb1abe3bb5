"""
Model graph and log-posterior evaluation.
"""

from .dsem import (
    SubjectQuantities,
    ar1_log_likelihood,
    dsem_graph,
    subject_quantities,
)
from .evaluator import LogPosterior
from .graph import Calc, ModelGraph, Obs, Param

__all__ = [
    "Calc",
    "LogPosterior",
    "ModelGraph",
    "Obs",
    "Param",
    "SubjectQuantities",
    "ar1_log_likelihood",
    "dsem_graph",
    "subject_quantities",
]
