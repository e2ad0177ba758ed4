"""
Configuration package for the AIVP research core.
Provides centralized configuration management with environment overrides.
"""

from .config import (
    DIAGNOSIS_MODE_PROMPT,
    CompletionConfig,
    Config,
    DatabaseConfig,
    PersistenceSettings,
    PricingConfig,
    ResearchConfig,
    config,
    initialize_config,
)

__all__ = [
    "config",
    "initialize_config",
    "Config",
    "DatabaseConfig",
    "PersistenceSettings",
    "CompletionConfig",
    "PricingConfig",
    "ResearchConfig",
    "DIAGNOSIS_MODE_PROMPT",
]
