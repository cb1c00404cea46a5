"""
Segment evaluation pipeline: definition -> predicate -> membership scan.
"""

from .compiler import Predicate, compile_definition, parse_definition
from .evaluator import ContactSource, MembershipEvaluator

__all__ = [
    "ContactSource",
    "MembershipEvaluator",
    "Predicate",
    "compile_definition",
    "parse_definition",
]
