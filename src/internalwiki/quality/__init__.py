"""Answer quality contract and its rolling ledger."""

from .contract import (
    CONTRACT_VERSION,
    AnswerQualityContractResult,
    AnswerQualityPolicy,
    DimensionResult,
    FreshnessPolicy,
    GroundednessPolicy,
    PermissionSafetyPolicy,
    QualityContractInput,
    evaluate_answer_quality,
)
from .ledger import (
    InMemoryQualityContractLedger,
    QualityContractLedger,
    QualityContractSummary,
    RedisQualityContractLedger,
    build_quality_ledger,
)

__all__ = [
    "CONTRACT_VERSION",
    "AnswerQualityContractResult",
    "AnswerQualityPolicy",
    "DimensionResult",
    "FreshnessPolicy",
    "GroundednessPolicy",
    "InMemoryQualityContractLedger",
    "PermissionSafetyPolicy",
    "QualityContractInput",
    "QualityContractLedger",
    "QualityContractSummary",
    "RedisQualityContractLedger",
    "build_quality_ledger",
    "evaluate_answer_quality",
]
