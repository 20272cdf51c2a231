"""Shared fixtures: the repository's ai_config documents, loaded once."""
from __future__ import annotations

from pathlib import Path

import pytest

from flipquery.governance.capabilities import CapabilityConfig, load_capability_config

AI_CONFIG_DIR = Path(__file__).resolve().parents[1] / "ai_config"


@pytest.fixture(scope="session")
def config() -> CapabilityConfig:
    return load_capability_config(AI_CONFIG_DIR)
