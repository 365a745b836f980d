"""
SpendLens - Core Modules
"""

from .categorizer import MerchantCategoryIndex, categorize
from .categorization_service import CategorizationService
from .pattern_detector import PatternDetector, detect_patterns
from .challenge_evaluator import ChallengeProgressEvaluator, EvaluationContext
from .challenge_orchestrator import ChallengeOrchestrator
from .errors import (
    InvalidOperation,
    NotFound,
    PatternDetectionFailure,
    StorageFailure,
    Unauthorized,
)

__all__ = [
    'MerchantCategoryIndex',
    'categorize',
    'CategorizationService',
    'PatternDetector',
    'detect_patterns',
    'ChallengeProgressEvaluator',
    'EvaluationContext',
    'ChallengeOrchestrator',
    'InvalidOperation',
    'NotFound',
    'PatternDetectionFailure',
    'StorageFailure',
    'Unauthorized',
]

__version__ = '0.1.0'
