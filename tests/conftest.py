"""Shared fixtures for purifier gateway tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from purifier_gateway.core.definitions import AttributeDefinition, ElementDefinition
from purifier_gateway.core.gateway import SanitizationGateway


@pytest.fixture
def cache_dir(tmp_path: Path) -> Path:
    return tmp_path / "purifier-cache"


@pytest.fixture
def profiles() -> dict:
    return {
        "default": {},
        "custom": {
            "custom_attributes": [AttributeDefinition("foo", "bar", "Text", required=True)],
            "custom_elements": [ElementDefinition("foo", "Inline", "Inline", "Common")],
        },
        "strict": {"HTML.AllowedElements": "b,i"},
    }


@pytest.fixture
def gateway(cache_dir: Path, profiles: dict) -> SanitizationGateway:
    return SanitizationGateway().initialize(
        encoding="UTF-8",
        cache_path=cache_dir,
        cache_file_mode=0o755,
        profiles=profiles,
        finalize=True,
    )


@pytest.fixture
def open_gateway(cache_dir: Path, profiles: dict) -> SanitizationGateway:
    return SanitizationGateway().initialize(
        encoding="UTF-8",
        cache_path=cache_dir,
        cache_file_mode=0o755,
        profiles=profiles,
        finalize=False,
    )
