"""
Domain models — Pydantic types and enums for the build pipeline.

All models are re-exported here for convenient access:

    from onerecovery.core.models import BuildConfig, EnvironmentProfile, Step
"""

from onerecovery.core.models.cache import CacheEntry, SourceComponent
from onerecovery.core.models.config import BuildConfig, PasswordPolicy
from onerecovery.core.models.environment import EnvironmentKind, EnvironmentProfile
from onerecovery.core.models.features import FEATURES, FeatureSet, FeatureSpec
from onerecovery.core.models.pipeline import BUILD_SEQUENCE, Checkpoint, Step
from onerecovery.core.models.resources import MemoryInfo, ResourcePlan
from onerecovery.core.models.strategy import Operation, StrategyKind, StrategyResult

__all__ = [
    "BUILD_SEQUENCE",
    # config.py
    "BuildConfig",
    # cache.py
    "CacheEntry",
    # pipeline.py
    "Checkpoint",
    # environment.py
    "EnvironmentKind",
    "EnvironmentProfile",
    # features.py
    "FEATURES",
    "FeatureSet",
    "FeatureSpec",
    # resources.py
    "MemoryInfo",
    # strategy.py
    "Operation",
    "PasswordPolicy",
    "ResourcePlan",
    "SourceComponent",
    "Step",
    "StrategyKind",
    "StrategyResult",
]
