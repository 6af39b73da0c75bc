#!/usr/bin/env python3
"""
Configuration Management
========================

Centralized configuration for supplement extraction. Values come from the
environment (optionally a .env file at the project root); every attribute
can be overridden per instance:

    config = Config(MODEL_TIMEOUT_S=5, SITE_MODES={'tillskottsbolaget.se': 'parallel'})
"""

import os
from typing import Dict, Any, Optional
from dotenv import load_dotenv

# Load environment variables from .env file
script_dir = os.path.dirname(os.path.abspath(__file__))
env_path = os.path.join(os.path.dirname(script_dir), '.env')
load_dotenv(env_path)


def _parse_site_modes(raw: Optional[str]) -> Dict[str, str]:
    """Parse 'domain=mode,domain=mode' into a dict."""
    modes = {}
    for item in (raw or '').split(','):
        if '=' not in item:
            continue
        domain, mode = item.split('=', 1)
        modes[domain.strip().lower()] = mode.strip().lower()
    return modes


class Config:
    """Extraction configuration"""

    # LLM Configuration
    ANTHROPIC_API_KEY = os.getenv('ANTHROPIC_API_KEY') or os.getenv('CLAUDE_API_KEY')
    CLAUDE_MODEL = os.getenv('CLAUDE_MODEL', 'claude-sonnet-4-20250514')
    NORMALIZER_MAX_TOKENS = int(os.getenv('NORMALIZER_MAX_TOKENS', 1500))
    VISION_MAX_TOKENS = int(os.getenv('VISION_MAX_TOKENS', 1000))

    # Remote services (HTTP endpoints take precedence over direct Claude calls)
    NORMALIZER_ENDPOINT = os.getenv('NORMALIZER_ENDPOINT')
    VISION_ENDPOINT = os.getenv('VISION_ENDPOINT')

    # Timeouts (seconds)
    MODEL_TIMEOUT_S = float(os.getenv('MODEL_TIMEOUT_S', 30))
    VISION_TIMEOUT_S = float(os.getenv('VISION_TIMEOUT_S', 45))
    SITE_TIMEOUT_S = float(os.getenv('SITE_TIMEOUT_S', 10))
    PAGE_LOAD_TIMEOUT_MS = int(os.getenv('PAGE_LOAD_TIMEOUT_MS', 30000))

    # Rule tables
    RULES_PATH = os.getenv('SUPPLEMENT_RULES_PATH')

    # Orchestration
    EXTRACTION_MODE = os.getenv('EXTRACTION_MODE', 'sequential').lower()
    SITE_MODES = _parse_site_modes(os.getenv('SITE_MODES'))

    # Fallback policy
    # completeness (%) at which model or pattern output is accepted without further fallback
    VALID_COMPLETENESS = 80
    # completeness (%) at which a vision-merged record is accepted
    ACCEPTABLE_COMPLETENESS = 70
    # site extractor confidence above which the legacy pipeline is skipped (sequential mode)
    SITE_HIGH_CONFIDENCE = 0.8
    # site extractor results below this confidence are ignored in parallel merges
    SITE_MIN_CONFIDENCE = 0.5
    # no pattern-derived field confidence exceeds this
    PATTERN_CONFIDENCE_CAP = 95

    def __init__(self, **overrides: Any):
        for key, value in overrides.items():
            if not hasattr(type(self), key):
                raise AttributeError(f"Unknown config option: {key}")
            setattr(self, key, value)

    def mode_for(self, domain: str) -> str:
        """Extraction mode for a site domain ('sequential' or 'parallel')."""
        domain = (domain or '').lower()
        if domain.startswith('www.'):
            domain = domain[4:]
        return self.SITE_MODES.get(domain, self.EXTRACTION_MODE)

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary (no secrets)"""
        return {
            'claude_model': self.CLAUDE_MODEL,
            'normalizer_endpoint': self.NORMALIZER_ENDPOINT,
            'vision_endpoint': self.VISION_ENDPOINT,
            'model_timeout_s': self.MODEL_TIMEOUT_S,
            'vision_timeout_s': self.VISION_TIMEOUT_S,
            'extraction_mode': self.EXTRACTION_MODE,
            'site_modes': dict(self.SITE_MODES),
            'valid_completeness': self.VALID_COMPLETENESS,
            'acceptable_completeness': self.ACCEPTABLE_COMPLETENESS,
            'site_high_confidence': self.SITE_HIGH_CONFIDENCE,
        }


# Global config instance
config = Config()
